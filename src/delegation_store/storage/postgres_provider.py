"""
PostgreSQL Delegation Store.

Relational backend with async SQLAlchemy. Works with any async dialect;
PostgreSQL through asyncpg is the production target.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    delete,
    insert,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..exceptions import DuplicateDelegationError, StoreUnavailableError
from ..models import ProxyCredential, ProxyRequest
from .provider import AbstractDelegationStore, StoreConfig
from .schema import PROXIES_COLLECTION, REQUESTS_COLLECTION, IndexSpec, index_specs

logger = logging.getLogger(__name__)

DEFAULT_URL = "postgresql+asyncpg://fts@localhost:5432/fts"


def build_tables(metadata: MetaData, specs: list[IndexSpec]) -> dict[str, Table]:
    """Declare both tables and their indexes on ``metadata``."""
    tables = {
        PROXIES_COLLECTION: Table(
            PROXIES_COLLECTION,
            metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("delegation_id", String(255), nullable=False),
            Column("user_dn", String(1024)),
            Column("not_after", DateTime(timezone=True), nullable=False),
            Column("pem", Text, nullable=False),
        ),
        REQUESTS_COLLECTION: Table(
            REQUESTS_COLLECTION,
            metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("delegation_id", String(255), nullable=False),
            Column("request", Text, nullable=False),
            Column("private_key", Text),
        ),
    }
    for spec in specs:
        table = tables[spec.collection]
        # Index names are schema wide in PostgreSQL
        Index(f"{spec.collection}_{spec.name}", table.c[spec.field], unique=spec.unique)
    return tables


@contextmanager
def _driver_errors(collection: Optional[str] = None, delegation_id: Optional[str] = None) -> Iterator[None]:
    """Translate SQLAlchemy errors into store errors."""
    try:
        yield
    except IntegrityError as e:
        if collection is None:
            raise
        raise DuplicateDelegationError(collection, delegation_id) from e
    except (OperationalError, InterfaceError, OSError) as e:
        raise StoreUnavailableError(f"database unreachable: {e}") from e


class PostgresDelegationStore(AbstractDelegationStore):
    """
    PostgreSQL delegation store.

    Features:
    - Unique indexes enforce one request and one credential per id
    - Index on ``not_after`` backs ``purge_expired``
    - Connection pooling with pre-ping

    SQL engines have no TTL index, so expired credentials are removed by
    ``purge_expired``, normally driven by an ExpiryMonitor.

    Requires: sqlalchemy[asyncio], asyncpg packages
    """

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        engine: Optional[AsyncEngine] = None,
        **kwargs,
    ):
        """Initialize SQL storage."""
        super().__init__(config or StoreConfig(backend="postgres"), **kwargs)
        self._engine = engine
        self._metadata = MetaData()
        tables = build_tables(self._metadata, index_specs(self.config.grace_seconds))
        self._proxies = tables[PROXIES_COLLECTION]
        self._requests = tables[REQUESTS_COLLECTION]

    async def connect(self) -> None:
        """Establish connection to the database."""
        if self._engine is None:
            url = self.config.url or DEFAULT_URL
            options = {"pool_pre_ping": True, "echo": False}
            if not url.startswith("sqlite"):
                options.update(
                    pool_size=self.config.pool_size,
                    max_overflow=20,
                    pool_timeout=self.config.timeout_seconds,
                )
            self._engine = create_async_engine(url, **options)

        with _driver_errors():
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        logger.info("Connected to %s database", self._engine.dialect.name)

    async def disconnect(self) -> None:
        """Close connection to the database."""
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None

    async def health_check(self) -> bool:
        """Check if the database is healthy."""
        try:
            if self._engine is not None:
                async with self._engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                return True
        except (SQLAlchemyError, OSError):
            logger.debug("Database health check failed", exc_info=True)
        return False

    def _engine_or_raise(self) -> AsyncEngine:
        if self._engine is None:
            raise StoreUnavailableError("SQL store is not connected")
        return self._engine

    def _db_time(self, value: datetime) -> datetime:
        # SQLite has no time zones; store naive UTC
        if self._engine_or_raise().dialect.name == "sqlite":
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def _credential_row(self, credential: ProxyCredential) -> dict:
        row = credential.model_dump()
        row["not_after"] = self._db_time(credential.not_after)
        return row

    async def _create_schema(self, specs: list[IndexSpec]) -> None:
        with _driver_errors():
            async with self._engine_or_raise().begin() as conn:
                await conn.run_sync(self._metadata.create_all)

    # Proxy requests

    async def _insert_request(self, request: ProxyRequest) -> None:
        with _driver_errors(REQUESTS_COLLECTION, request.delegation_id):
            async with self._engine_or_raise().begin() as conn:
                await conn.execute(insert(self._requests).values(**request.model_dump()))

    async def _find_request(self, delegation_id: str) -> Optional[ProxyRequest]:
        t = self._requests
        with _driver_errors():
            async with self._engine_or_raise().connect() as conn:
                result = await conn.execute(
                    select(t.c.delegation_id, t.c.request, t.c.private_key).where(
                        t.c.delegation_id == delegation_id
                    )
                )
                row = result.mappings().first()
        return ProxyRequest.model_validate(dict(row)) if row else None

    async def _remove_request(self, delegation_id: str) -> bool:
        with _driver_errors():
            async with self._engine_or_raise().begin() as conn:
                result = await conn.execute(
                    delete(self._requests).where(self._requests.c.delegation_id == delegation_id)
                )
                removed = result.rowcount
        return removed > 0

    # Proxy credentials

    async def _insert_credential(self, credential: ProxyCredential) -> None:
        with _driver_errors(PROXIES_COLLECTION, credential.delegation_id):
            async with self._engine_or_raise().begin() as conn:
                await conn.execute(insert(self._proxies).values(**self._credential_row(credential)))

    async def _find_credential(self, delegation_id: str) -> Optional[ProxyCredential]:
        t = self._proxies
        with _driver_errors():
            async with self._engine_or_raise().connect() as conn:
                result = await conn.execute(
                    select(t.c.delegation_id, t.c.not_after, t.c.pem, t.c.user_dn).where(
                        t.c.delegation_id == delegation_id
                    )
                )
                row = result.mappings().first()
        return ProxyCredential.model_validate(dict(row)) if row else None

    async def _replace_credential(self, credential: ProxyCredential) -> None:
        t = self._proxies
        with _driver_errors(PROXIES_COLLECTION, credential.delegation_id):
            async with self._engine_or_raise().begin() as conn:
                await conn.execute(delete(t).where(t.c.delegation_id == credential.delegation_id))
                await conn.execute(insert(t).values(**self._credential_row(credential)))

    async def _remove_credential(self, delegation_id: str) -> bool:
        with _driver_errors():
            async with self._engine_or_raise().begin() as conn:
                result = await conn.execute(
                    delete(self._proxies).where(self._proxies.c.delegation_id == delegation_id)
                )
                removed = result.rowcount
        return removed > 0

    async def _live_delegation_ids(self, now: datetime) -> list[str]:
        t = self._proxies
        with _driver_errors():
            async with self._engine_or_raise().connect() as conn:
                result = await conn.execute(
                    select(t.c.delegation_id).where(t.c.not_after > self._db_time(now))
                )
                return list(result.scalars())

    async def _purge_before(self, cutoff: datetime) -> int:
        t = self._proxies
        with _driver_errors():
            async with self._engine_or_raise().begin() as conn:
                result = await conn.execute(
                    delete(t).where(t.c.not_after <= self._db_time(cutoff))
                )
                removed = result.rowcount
        return removed
