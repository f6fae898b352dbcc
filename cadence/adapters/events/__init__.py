"""Event sink adapters for delivering lifecycle events.

Implementations:
- Log (structured records through the logging module)
- Stdout (human-readable lines with locale-aware amounts)
"""
