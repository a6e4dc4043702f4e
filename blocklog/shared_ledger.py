"""
Shared Ledger Instance

Builds the process-wide AuditLedger from environment configuration.
Supports in-memory (development), SQLite (single file) and PostgreSQL
(production) stores.

Mode is determined by environment variables:
- BLOCKLOG_STORE_DRIVER: Explicit backend selection (memory, sqlite, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

Unlike a misconfigured read model, a misconfigured audit store is fatal:
if PostgreSQL was asked for and cannot be reached, startup fails rather
than silently recording events into memory.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Optional

import psycopg2

from .core import AuditLedger, RepairJournal, RetryPolicy
from .core.journal import DEFAULT_JOURNAL_PATH
from .core.verifier import get_scan_page_size
from .db.config import DatabaseConfig, StoreDriver, get_sqlite_path, get_store_driver
from .db.store import InMemoryLedgerStore, LedgerStore, PostgresLedgerStore, SqliteLedgerStore
from .observability import get_logger

logger = get_logger(__name__)


@dataclass
class LedgerConfig:
    """Everything needed to wire up an AuditLedger."""
    driver: StoreDriver = StoreDriver.MEMORY
    sqlite_path: str = "blocklog.db"
    database: Optional[DatabaseConfig] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    page_size: int = 500
    journal_path: str = DEFAULT_JOURNAL_PATH
    admin_token: Optional[str] = None
    verify_on_startup: bool = True

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Load configuration from environment variables."""
        driver = get_store_driver()
        return cls(
            driver=driver,
            sqlite_path=get_sqlite_path(),
            database=DatabaseConfig.from_env() if driver == StoreDriver.PSYCOPG2 else None,
            retry=RetryPolicy.from_env(),
            page_size=get_scan_page_size(),
            journal_path=os.environ.get("BLOCKLOG_JOURNAL_PATH", DEFAULT_JOURNAL_PATH),
            admin_token=os.environ.get("BLOCKLOG_ADMIN_TOKEN") or None,
            verify_on_startup=os.environ.get(
                "BLOCKLOG_VERIFY_ON_STARTUP", "1"
            ).lower() in ("1", "true", "yes"),
        )


def create_store(config: LedgerConfig) -> LedgerStore:
    """
    Create the LedgerStore selected by configuration.

    Raises:
        psycopg2.Error: PostgreSQL configured but unreachable
    """
    if config.driver == StoreDriver.MEMORY:
        logger.warning("Using in-memory ledger store (no persistence)")
        return InMemoryLedgerStore()

    if config.driver == StoreDriver.SQLITE:
        store = SqliteLedgerStore(Path(config.sqlite_path))
        logger.info("Using SQLite ledger store", path=str(store.db_path))
        return store

    return _create_postgres_store(config.database or DatabaseConfig.from_env())


def _create_postgres_store(db: DatabaseConfig) -> LedgerStore:
    dsn = db.to_dsn()

    def connection_factory():
        return psycopg2.connect(dsn)

    # Fail fast on bad credentials / unreachable host
    test_conn = connection_factory()
    test_conn.close()

    store = PostgresLedgerStore(
        connection_factory,
        lock_timeout_ms=db.lock_timeout_ms,
        statement_timeout_ms=db.statement_timeout_ms,
    )
    store.init_schema()
    logger.info(
        "PostgreSQL ledger store ready",
        url=db.to_url(include_password=False),
    )
    return store


def create_ledger(config: Optional[LedgerConfig] = None, store: Optional[LedgerStore] = None) -> AuditLedger:
    """Wire an AuditLedger (store, coordinator, verifier, repair tool, journal)."""
    config = config or LedgerConfig.from_env()
    if store is None:
        store = create_store(config)
    return AuditLedger(
        store,
        journal=RepairJournal(Path(config.journal_path)),
        retry_policy=config.retry,
        page_size=config.page_size,
    )


_shared_lock = Lock()
_shared_ledger: Optional[AuditLedger] = None


def get_shared_ledger() -> AuditLedger:
    """The process-wide ledger, created on first use."""
    global _shared_ledger
    with _shared_lock:
        if _shared_ledger is None:
            _shared_ledger = create_ledger()
        return _shared_ledger


def reset_shared_ledger() -> None:
    """Drop the process-wide ledger (for testing only)."""
    global _shared_ledger
    with _shared_lock:
        if _shared_ledger is not None:
            _shared_ledger.store.close()
        _shared_ledger = None
