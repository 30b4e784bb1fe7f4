# Copyright (c) Delegation Store Contributors. All rights reserved.
# Licensed under the MIT License.
"""
MongoDB Delegation Store.

Native home of the store layout: unique indexes on ``delegation_id`` and a
TTL index on ``x509_proxies.not_after`` that lets the server purge
expired credentials on its own.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

from pymongo import ASCENDING, AsyncMongoClient
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError

from ..exceptions import DelegationStoreError, DuplicateDelegationError, StoreUnavailableError
from ..models import ProxyCredential, ProxyRequest
from .provider import AbstractDelegationStore, StoreConfig
from .schema import COLLECTIONS, PROXIES_COLLECTION, REQUESTS_COLLECTION, IndexSpec

logger = logging.getLogger(__name__)

DEFAULT_URL = "mongodb://localhost:27017"

# IndexOptionsConflict, IndexKeySpecsConflict
_INDEX_CONFLICT_CODES = (85, 86)


@contextmanager
def _driver_errors(collection: Optional[str] = None, delegation_id: Optional[str] = None) -> Iterator[None]:
    """Translate pymongo errors into store errors."""
    try:
        yield
    except DuplicateKeyError as e:
        if collection is None:
            raise
        raise DuplicateDelegationError(collection, delegation_id) from e
    except ConnectionFailure as e:
        raise StoreUnavailableError(f"MongoDB unreachable: {e}") from e


class MongoDelegationStore(AbstractDelegationStore):
    """
    MongoDB delegation store.

    Features:
    - Unique indexes enforce one request and one credential per id
    - TTL index purges credentials ``grace_seconds`` after ``not_after``
    - Async pymongo client with connection pooling

    Requires: pymongo>=4.13
    """

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        client: Optional[AsyncMongoClient] = None,
        **kwargs,
    ):
        """Initialize MongoDB storage."""
        super().__init__(config or StoreConfig(backend="mongodb"), **kwargs)
        self._client = client
        self._db = client[self.config.database] if client is not None else None

    async def connect(self) -> None:
        """Establish connection to MongoDB."""
        if self._client is None:
            self._client = AsyncMongoClient(
                self.config.url or DEFAULT_URL,
                maxPoolSize=self.config.pool_size,
                serverSelectionTimeoutMS=self.config.timeout_seconds * 1000,
                tz_aware=True,
            )
            self._db = self._client[self.config.database]

        with _driver_errors():
            await self._client.admin.command("ping")
        logger.info("Connected to MongoDB database %s", self.config.database)

    async def disconnect(self) -> None:
        """Close connection to MongoDB."""
        if self._client is not None:
            await self._client.close()
        self._client = None
        self._db = None

    async def health_check(self) -> bool:
        """Check if MongoDB is healthy."""
        try:
            if self._client is not None:
                await self._client.admin.command("ping")
                return True
        except PyMongoError:
            logger.debug("MongoDB health check failed", exc_info=True)
        return False

    def _collection(self, name: str) -> Any:
        if self._db is None:
            raise StoreUnavailableError("MongoDB store is not connected")
        return self._db[name]

    async def _create_schema(self, specs: list[IndexSpec]) -> None:
        if self._db is None:
            raise StoreUnavailableError("MongoDB store is not connected")

        with _driver_errors():
            existing = await self._db.list_collection_names()
            for name in COLLECTIONS:
                if name not in existing:
                    await self._db.create_collection(name)
                    logger.info("Created collection %s", name)

            for spec in specs:
                await self._ensure_index(spec)

    async def _ensure_index(self, spec: IndexSpec) -> None:
        collection = self._db[spec.collection]
        options: dict[str, Any] = {"name": spec.name, "unique": spec.unique}
        if spec.is_ttl:
            options["expireAfterSeconds"] = spec.expire_after_seconds
        try:
            await collection.create_index([(spec.field, ASCENDING)], **options)
            return
        except OperationFailure as e:
            if e.code not in _INDEX_CONFLICT_CODES:
                raise DelegationStoreError(
                    f"cannot create index {spec.collection}.{spec.name}: {e}"
                ) from e
            conflict = e

        # Same key already indexed, possibly under the server default name
        name, existing = await self._find_index(collection, spec.field)
        if existing is None or bool(existing.get("unique")) != spec.unique:
            raise DelegationStoreError(
                f"cannot create index {spec.collection}.{spec.name}: {conflict}"
            ) from conflict

        if spec.is_ttl and existing.get("expireAfterSeconds") != spec.expire_after_seconds:
            await self._db.command(
                "collMod",
                spec.collection,
                index={
                    "keyPattern": {spec.field: ASCENDING},
                    "expireAfterSeconds": spec.expire_after_seconds,
                },
            )
            logger.info(
                "Changed %s.%s grace to %ss",
                spec.collection,
                name,
                spec.expire_after_seconds,
            )
        else:
            logger.info("Index %s.%s already present as %s", spec.collection, spec.name, name)

    @staticmethod
    async def _find_index(collection: Any, field: str) -> tuple[Optional[str], Optional[dict]]:
        """Return the name and options of the single-field index on ``field``."""
        for name, info in (await collection.index_information()).items():
            if list(info.get("key", [])) == [(field, ASCENDING)]:
                return name, info
        return None, None

    # Proxy requests

    async def _insert_request(self, request: ProxyRequest) -> None:
        with _driver_errors(REQUESTS_COLLECTION, request.delegation_id):
            await self._collection(REQUESTS_COLLECTION).insert_one(request.model_dump())

    async def _find_request(self, delegation_id: str) -> Optional[ProxyRequest]:
        with _driver_errors():
            doc = await self._collection(REQUESTS_COLLECTION).find_one(
                {"delegation_id": delegation_id}, {"_id": False}
            )
        return ProxyRequest.model_validate(doc) if doc else None

    async def _remove_request(self, delegation_id: str) -> bool:
        with _driver_errors():
            result = await self._collection(REQUESTS_COLLECTION).delete_one(
                {"delegation_id": delegation_id}
            )
        return result.deleted_count > 0

    # Proxy credentials

    async def _insert_credential(self, credential: ProxyCredential) -> None:
        with _driver_errors(PROXIES_COLLECTION, credential.delegation_id):
            await self._collection(PROXIES_COLLECTION).insert_one(credential.model_dump())

    async def _find_credential(self, delegation_id: str) -> Optional[ProxyCredential]:
        with _driver_errors():
            doc = await self._collection(PROXIES_COLLECTION).find_one(
                {"delegation_id": delegation_id}, {"_id": False}
            )
        return ProxyCredential.model_validate(doc) if doc else None

    async def _replace_credential(self, credential: ProxyCredential) -> None:
        with _driver_errors(PROXIES_COLLECTION, credential.delegation_id):
            await self._collection(PROXIES_COLLECTION).replace_one(
                {"delegation_id": credential.delegation_id},
                credential.model_dump(),
                upsert=True,
            )

    async def _remove_credential(self, delegation_id: str) -> bool:
        with _driver_errors():
            result = await self._collection(PROXIES_COLLECTION).delete_one(
                {"delegation_id": delegation_id}
            )
        return result.deleted_count > 0

    async def _live_delegation_ids(self, now: datetime) -> list[str]:
        with _driver_errors():
            return await self._collection(PROXIES_COLLECTION).distinct(
                "delegation_id", {"not_after": {"$gt": now}}
            )

    async def _purge_before(self, cutoff: datetime) -> int:
        # The TTL monitor removes expired credentials server side
        return 0
