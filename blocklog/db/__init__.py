"""
Storage Layer for the blocklog ledger

Provides:
- LedgerStore abstraction (InMemory for dev, SQLite for single-file
  deployments, Postgres for prod)
- Connection configuration and backend selection
"""

from .store import (
    LedgerStore,
    InMemoryLedgerStore,
    SqliteLedgerStore,
    PostgresLedgerStore,
    StoreError,
    TransientStoreError,
    StoreConflictError,
    EntryNotFoundError,
)
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver

__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "SqliteLedgerStore",
    "PostgresLedgerStore",
    "StoreError",
    "TransientStoreError",
    "StoreConflictError",
    "EntryNotFoundError",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
    "get_store_driver",
]
