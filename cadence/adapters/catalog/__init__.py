"""Catalog adapters resolving plan and coupon definitions.

Implementations:
- Static (JSON files loaded once at startup)
"""
