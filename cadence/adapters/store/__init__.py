"""Billing store adapters for persistence and querying.

Implementations support multiple backends:
- SQLite (zero-config, single-file)
- PostgreSQL (distributed, scalable)
"""
