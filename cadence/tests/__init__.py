"""Test suite for the Cadence billing engine.

Organized into four categories:

1. core/: Unit tests for core domain logic
   - Minimal dependencies, fast execution
   - Uses in-memory fakes for ports

2. adapters/: Integration tests for adapter implementations
   - SQLite on temporary files, stubbed HTTP transports
   - Validates adapter behavior and error handling

3. integration/: Core services running on the SQLite store

4. fakes/: Port implementations for testing
   - In-memory implementations of BillingStorePort, EventSinkPort, etc.
   - Used by core unit tests
"""
