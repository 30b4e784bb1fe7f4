"""
In-Memory Delegation Store.

Simple in-memory implementation for development and testing.
"""

import asyncio
from datetime import datetime
from typing import Optional

from ..exceptions import DuplicateDelegationError, StoreUnavailableError
from ..models import ProxyCredential, ProxyRequest
from .provider import AbstractDelegationStore, StoreConfig
from .schema import PROXIES_COLLECTION, REQUESTS_COLLECTION, IndexSpec


class MemoryDelegationStore(AbstractDelegationStore):
    """
    In-memory delegation store.

    Uses Python dictionaries for storage. Data is lost on restart.
    Expired credentials stay until ``purge_expired`` runs, the way a
    TTL monitor lags behind the clock.
    """

    def __init__(self, config: Optional[StoreConfig] = None, **kwargs):
        """Initialize in-memory storage."""
        super().__init__(config or StoreConfig(backend="memory"), **kwargs)
        self._requests: dict[str, ProxyRequest] = {}
        self._credentials: dict[str, ProxyCredential] = {}
        self._lock = asyncio.Lock()
        self._connected = False

    async def connect(self) -> None:
        """Establish connection (no-op for memory)."""
        self._connected = True

    async def disconnect(self) -> None:
        """Close connection (no-op for memory)."""
        self._connected = False

    async def health_check(self) -> bool:
        """Check if storage is healthy."""
        return self._connected

    def _require_connected(self) -> None:
        if not self._connected:
            raise StoreUnavailableError("memory store is not connected")

    async def _create_schema(self, specs: list[IndexSpec]) -> None:
        self._require_connected()

    # Proxy requests

    async def _insert_request(self, request: ProxyRequest) -> None:
        self._require_connected()
        async with self._lock:
            if request.delegation_id in self._requests:
                raise DuplicateDelegationError(REQUESTS_COLLECTION, request.delegation_id)
            self._requests[request.delegation_id] = request.model_copy()

    async def _find_request(self, delegation_id: str) -> Optional[ProxyRequest]:
        self._require_connected()
        request = self._requests.get(delegation_id)
        return request.model_copy() if request is not None else None

    async def _remove_request(self, delegation_id: str) -> bool:
        self._require_connected()
        return self._requests.pop(delegation_id, None) is not None

    # Proxy credentials

    async def _insert_credential(self, credential: ProxyCredential) -> None:
        self._require_connected()
        async with self._lock:
            if credential.delegation_id in self._credentials:
                raise DuplicateDelegationError(PROXIES_COLLECTION, credential.delegation_id)
            self._credentials[credential.delegation_id] = credential.model_copy()

    async def _find_credential(self, delegation_id: str) -> Optional[ProxyCredential]:
        self._require_connected()
        credential = self._credentials.get(delegation_id)
        return credential.model_copy() if credential is not None else None

    async def _replace_credential(self, credential: ProxyCredential) -> None:
        self._require_connected()
        async with self._lock:
            self._credentials[credential.delegation_id] = credential.model_copy()

    async def _remove_credential(self, delegation_id: str) -> bool:
        self._require_connected()
        return self._credentials.pop(delegation_id, None) is not None

    async def _live_delegation_ids(self, now: datetime) -> list[str]:
        self._require_connected()
        return [
            delegation_id
            for delegation_id, credential in self._credentials.items()
            if credential.not_after > now
        ]

    async def _purge_before(self, cutoff: datetime) -> int:
        self._require_connected()
        async with self._lock:
            expired = [
                delegation_id
                for delegation_id, credential in self._credentials.items()
                if credential.not_after <= cutoff
            ]
            for delegation_id in expired:
                del self._credentials[delegation_id]
        return len(expired)
