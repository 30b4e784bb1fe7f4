"""
Redis Delegation Store.

Keeps each record under its own key. ``SET NX`` enforces uniqueness and
credential keys carry a native expiry at ``not_after`` plus grace.
"""

import logging
import math
import re
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..exceptions import DuplicateDelegationError, StoreUnavailableError
from ..models import ProxyCredential, ProxyRequest
from .provider import AbstractDelegationStore, StoreConfig
from .schema import PROXIES_COLLECTION, REQUESTS_COLLECTION, IndexSpec

logger = logging.getLogger(__name__)

_GLOB_SPECIALS = re.compile(r"([*?\[\]\\])")

DEFAULT_URL = "redis://localhost:6379/0"


@contextmanager
def _driver_errors() -> Iterator[None]:
    """Translate redis errors into store errors."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as e:
        raise StoreUnavailableError(f"Redis unreachable: {e}") from e


class RedisDelegationStore(AbstractDelegationStore):
    """
    Redis delegation store.

    Features:
    - Connection pooling
    - Uniqueness through ``SET NX``
    - Native key expiry in place of a TTL index

    Keys are ``<key_prefix><collection>:<delegation_id>`` and hold the
    record as JSON.

    Requires: redis>=5
    """

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        client: Optional[aioredis.Redis] = None,
        **kwargs,
    ):
        """Initialize Redis storage."""
        super().__init__(config or StoreConfig(backend="redis"), **kwargs)
        self._client = client

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._client is None:
            self._client = aioredis.Redis.from_url(
                self.config.url or DEFAULT_URL,
                max_connections=self.config.pool_size,
                socket_timeout=self.config.timeout_seconds,
                socket_connect_timeout=self.config.timeout_seconds,
                decode_responses=True,
            )

        with _driver_errors():
            await self._client.ping()
        logger.info("Connected to Redis")

    async def disconnect(self) -> None:
        """Close connection to Redis."""
        if self._client is not None:
            await self._client.aclose()
        self._client = None

    async def health_check(self) -> bool:
        """Check if Redis is healthy."""
        try:
            if self._client is not None:
                await self._client.ping()
                return True
        except RedisError:
            logger.debug("Redis health check failed", exc_info=True)
        return False

    # -- Key helpers ----------------------------------------------------------

    def _key(self, collection: str, delegation_id: str) -> str:
        return f"{self.config.key_prefix}{collection}:{delegation_id}"

    def _scan_pattern(self, collection: str) -> str:
        """SCAN pattern for every key of ``collection``, prefix taken literally."""
        return _GLOB_SPECIALS.sub(r"\\\1", self._key(collection, "")) + "*"

    def _client_or_raise(self) -> aioredis.Redis:
        if self._client is None:
            raise StoreUnavailableError("Redis store is not connected")
        return self._client

    def _ttl_seconds(self, credential: ProxyCredential) -> int:
        """Seconds until the credential key should vanish, at least 1."""
        remaining = (credential.not_after + self.grace - self.now()).total_seconds()
        return max(1, math.ceil(remaining))

    async def _create_schema(self, specs: list[IndexSpec]) -> None:
        # Key namespaces need no setup
        with _driver_errors():
            await self._client_or_raise().ping()

    # -- Proxy requests -------------------------------------------------------

    async def _insert_request(self, request: ProxyRequest) -> None:
        key = self._key(REQUESTS_COLLECTION, request.delegation_id)
        with _driver_errors():
            stored = await self._client_or_raise().set(key, request.model_dump_json(), nx=True)
        if not stored:
            raise DuplicateDelegationError(REQUESTS_COLLECTION, request.delegation_id)

    async def _find_request(self, delegation_id: str) -> Optional[ProxyRequest]:
        with _driver_errors():
            raw = await self._client_or_raise().get(self._key(REQUESTS_COLLECTION, delegation_id))
        return ProxyRequest.model_validate_json(raw) if raw is not None else None

    async def _remove_request(self, delegation_id: str) -> bool:
        with _driver_errors():
            removed = await self._client_or_raise().delete(self._key(REQUESTS_COLLECTION, delegation_id))
        return removed > 0

    # -- Proxy credentials ----------------------------------------------------

    async def _insert_credential(self, credential: ProxyCredential) -> None:
        key = self._key(PROXIES_COLLECTION, credential.delegation_id)
        with _driver_errors():
            stored = await self._client_or_raise().set(
                key,
                credential.model_dump_json(),
                nx=True,
                ex=self._ttl_seconds(credential),
            )
        if not stored:
            raise DuplicateDelegationError(PROXIES_COLLECTION, credential.delegation_id)

    async def _find_credential(self, delegation_id: str) -> Optional[ProxyCredential]:
        with _driver_errors():
            raw = await self._client_or_raise().get(self._key(PROXIES_COLLECTION, delegation_id))
        return ProxyCredential.model_validate_json(raw) if raw is not None else None

    async def _replace_credential(self, credential: ProxyCredential) -> None:
        key = self._key(PROXIES_COLLECTION, credential.delegation_id)
        with _driver_errors():
            await self._client_or_raise().set(
                key, credential.model_dump_json(), ex=self._ttl_seconds(credential)
            )

    async def _remove_credential(self, delegation_id: str) -> bool:
        with _driver_errors():
            removed = await self._client_or_raise().delete(self._key(PROXIES_COLLECTION, delegation_id))
        return removed > 0

    async def _live_delegation_ids(self, now: datetime) -> list[str]:
        client = self._client_or_raise()
        pattern = self._scan_pattern(PROXIES_COLLECTION)
        with _driver_errors():
            keys = [key async for key in client.scan_iter(match=pattern)]
            values = await client.mget(keys) if keys else []

        ids = []
        for raw in values:
            # Key expired between SCAN and MGET
            if raw is None:
                continue
            credential = ProxyCredential.model_validate_json(raw)
            if credential.not_after > now:
                ids.append(credential.delegation_id)
        return ids

    async def _purge_before(self, cutoff: datetime) -> int:
        # Keys expire on their own
        return 0
