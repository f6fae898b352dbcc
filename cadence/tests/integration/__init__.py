"""Integration tests running core services on real adapters."""
