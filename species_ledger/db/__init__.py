"""
Database Layer for the Species Ledger

Provides:
- PostgreSQL schema
- EventStore abstraction (InMemory for dev, Postgres for prod)
"""

from .store import (
    EventStore,
    InMemoryEventStore,
    PostgresEventStore,
    EventStoreError,
    ConcurrencyError,
    ChainIntegrityError,
    LockTimeoutError,
    ChainHead,
)

__all__ = [
    "EventStore",
    "InMemoryEventStore",
    "PostgresEventStore",
    "EventStoreError",
    "ConcurrencyError",
    "ChainIntegrityError",
    "LockTimeoutError",
    "ChainHead",
]
