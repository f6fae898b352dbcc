"""Mandate provider adapters.

Implementations:
- HTTP (payment provider REST API)
- None (every mandate is treated as invalid; first payments only)
"""
