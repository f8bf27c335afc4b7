"""
Shared Ledger Instance

Builds the process-wide event store and ledger on first use.
Supports both in-memory (development) and PostgreSQL (production) modes,
selected by StoreSettings (see species_ledger.config).

An empty store gets a fresh ledger deployed with the configured admin
and validator. A populated store is verified and replayed.
"""

from threading import Lock
from typing import Optional

from .config import LedgerSettings, StoreSettings
from .core import SigningService, SpeciesLedger
from .db.store import EventStore, InMemoryEventStore
from .observability import get_logger

logger = get_logger(__name__)

_init_lock = Lock()
_ledger: Optional[SpeciesLedger] = None


def create_event_store(
    production: bool = False,
    store_settings: Optional[StoreSettings] = None,
) -> EventStore:
    """
    Create the EventStore selected by configuration.

    In production a database failure is fatal. In development it falls
    back to the in-memory store.
    """
    store_settings = store_settings or StoreSettings.from_env()

    if not store_settings.uses_database:
        logger.info("Using in-memory event store (no persistence)")
        return InMemoryEventStore()

    if store_settings.dsn is None:
        if production:
            raise RuntimeError(
                f"EVENTSTORE_DRIVER is {store_settings.driver.value} but no database is configured"
            )
        logger.warning(
            "No database configured, falling back to in-memory store",
            driver=store_settings.driver.value,
        )
        return InMemoryEventStore()

    try:
        return _create_psycopg2_store(store_settings)
    except Exception as e:
        if production:
            raise
        logger.error(
            "Could not connect to PostgreSQL, falling back to in-memory store",
            error=str(e),
            database=store_settings.describe(),
        )
        return InMemoryEventStore()


def _create_psycopg2_store(store_settings: StoreSettings) -> EventStore:
    import psycopg2
    from .db.store import PostgresEventStore

    dsn = store_settings.connection_dsn()

    def connection_factory():
        return psycopg2.connect(dsn)

    # Fail fast on a bad DSN
    test_conn = connection_factory()
    test_conn.close()

    logger.info("PostgreSQL event store connected", database=store_settings.describe())
    return PostgresEventStore(connection_factory)


def create_ledger(
    store: EventStore,
    settings: Optional[LedgerSettings] = None,
    signing_service: Optional[SigningService] = None,
) -> SpeciesLedger:
    """
    Deploy a fresh ledger on an empty store, or verify and replay an
    existing one.
    """
    settings = settings or LedgerSettings.from_env()
    signing_service = signing_service or SigningService.from_env(production=settings.production)

    event_count = store.get_event_count()
    if event_count == 0:
        logger.info("Empty store, deploying fresh ledger")
        return SpeciesLedger.deploy(
            settings.admin,
            settings.authorized_validator,
            event_store=store,
            signing_service=signing_service,
        )

    # An ephemeral key cannot have signed a previous process's events
    verify_signatures = settings.verify_signatures and not signing_service.is_ephemeral
    logger.info("Loading events from store", event_count=event_count, verify_signatures=verify_signatures)
    return SpeciesLedger.load_from_store(
        store,
        signing_service=signing_service,
        verify=True,
        verify_signatures=verify_signatures,
    )


def get_ledger() -> SpeciesLedger:
    """Get the shared ledger, creating its store and replaying it on first use."""
    global _ledger
    with _init_lock:
        if _ledger is None:
            settings = LedgerSettings.from_env()
            _ledger = create_ledger(create_event_store(production=settings.production), settings)
        return _ledger
