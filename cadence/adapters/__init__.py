"""External adapters for the Cadence billing engine.

This package contains all external dependencies (SQLite, PostgreSQL,
the payment provider API, Babel, etc.) and provides implementations
of the core port interfaces.

Adapter Organization:

- store/: Adapters for billing record persistence (SQLite, PostgreSQL)
- catalog/: Adapters resolving plans and coupons (static JSON files)
- mandates/: Adapters checking payment mandates (HTTP provider API)
- events/: Adapters delivering lifecycle events (log, stdout)
- scheduler/: Adapters for driving the billing run (daemon, single run)
- clock.py: System clock
"""
