"""
Ledger Settings

Deployment-time identities, runtime switches and event store selection.

Environment Variables:
    SPECIES_LEDGER_ADMIN: admin identity at deployment (default "deployer")
    SPECIES_LEDGER_VALIDATOR: authorized validator at deployment (default "validator")
    SPECIES_LEDGER_PRODUCTION: require a configured signing key and a reachable database
    SPECIES_LEDGER_VERIFY_SIGNATURES: verify event signatures when loading
        an existing store (default true when the signing key is configured)

    EVENTSTORE_DRIVER: "memory" or "psycopg2". Defaults to psycopg2 when a
        database is configured, memory otherwise.
    DATABASE_URL: libpq connection string or postgresql:// URI
    DATABASE_HOST, DATABASE_PORT, DATABASE_NAME, DATABASE_USER,
    DATABASE_PASSWORD, DATABASE_SSL_MODE: used when DATABASE_URL is unset
    DATABASE_CONNECT_TIMEOUT: seconds (default 10)

The admin and validator settings are only read when the store is empty.
Afterwards the ledger's own history is authoritative: changes made
through transfer_admin / set_authorized_validator survive restarts.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .observability import is_production


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes")


@dataclass
class LedgerSettings:
    admin: str = "deployer"
    authorized_validator: str = "validator"
    production: bool = False
    verify_signatures: bool = True

    @classmethod
    def from_env(cls) -> "LedgerSettings":
        return cls(
            admin=os.getenv("SPECIES_LEDGER_ADMIN", "deployer"),
            authorized_validator=os.getenv("SPECIES_LEDGER_VALIDATOR", "validator"),
            production=is_production(),
            verify_signatures=_env_flag("SPECIES_LEDGER_VERIFY_SIGNATURES", True),
        )


class StoreDriver(str, Enum):
    MEMORY = "memory"
    PSYCOPG2 = "psycopg2"


def _dsn_from_parts() -> Optional[str]:
    """libpq DSN from the DATABASE_* variables, or None without DATABASE_HOST."""
    host = os.getenv("DATABASE_HOST")
    if not host:
        return None

    from psycopg2.extensions import make_dsn

    return make_dsn(
        host=host,
        port=os.getenv("DATABASE_PORT", "5432"),
        dbname=os.getenv("DATABASE_NAME", "species_ledger"),
        user=os.getenv("DATABASE_USER", "postgres"),
        password=os.getenv("DATABASE_PASSWORD") or None,
        sslmode=os.getenv("DATABASE_SSL_MODE", "prefer"),
    )


@dataclass
class StoreSettings:
    """
    Where the event log lives.

    dsn is whatever libpq accepts: "host=... dbname=..." or a
    postgresql:// URI. It is None when no database is configured.
    """
    driver: StoreDriver = StoreDriver.MEMORY
    dsn: Optional[str] = None
    connect_timeout: int = 10

    @classmethod
    def from_env(cls) -> "StoreSettings":
        dsn = os.getenv("DATABASE_URL") or _dsn_from_parts()

        explicit = os.getenv("EVENTSTORE_DRIVER", "").lower()
        if explicit:
            try:
                driver = StoreDriver(explicit)
            except ValueError:
                raise ValueError(
                    f"Unknown EVENTSTORE_DRIVER: {explicit}. "
                    f"Valid values: {', '.join(d.value for d in StoreDriver)}"
                ) from None
        else:
            driver = StoreDriver.PSYCOPG2 if dsn else StoreDriver.MEMORY

        return cls(
            driver=driver,
            dsn=dsn,
            connect_timeout=int(os.getenv("DATABASE_CONNECT_TIMEOUT", "10")),
        )

    @property
    def uses_database(self) -> bool:
        return self.driver != StoreDriver.MEMORY

    def connection_dsn(self) -> str:
        """The configured DSN with the connect timeout applied."""
        from psycopg2.extensions import make_dsn

        return make_dsn(self.dsn, connect_timeout=self.connect_timeout)

    def describe(self) -> str:
        """Connection parameters without the password, for logs and the CLI."""
        if self.dsn is None:
            return "in-memory"

        from psycopg2.extensions import parse_dsn

        params = parse_dsn(self.dsn)
        params.pop("password", None)
        return " ".join(f"{key}={value}" for key, value in sorted(params.items()))
