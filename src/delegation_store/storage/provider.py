# Copyright (c) Delegation Store Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Abstract Delegation Store Interface.

Defines the contract that all storage backends must implement, and the
caller-facing operations shared by every backend: uniqueness errors,
the expired-reads-as-absent policy, logging and metrics.
"""

import logging
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Mapping, Optional

from pydantic import BaseModel, Field

from ..exceptions import (
    CredentialIgnoredError,
    DelegationNotFoundError,
    DuplicateDelegationError,
)
from ..models import ProxyCredential, ProxyRequest, as_utc, utcnow
from ..observability.metrics import StoreMetrics
from .schema import (
    DEFAULT_GRACE_SECONDS,
    PROXIES_COLLECTION,
    REQUESTS_COLLECTION,
    IndexSpec,
    index_specs,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "DELEGATION_STORE_"


class StoreConfig(BaseModel):
    """Configuration for a delegation store."""

    backend: str = Field(default="memory", description="Storage backend type")
    url: Optional[str] = Field(default=None, description="Connection string")
    database: str = Field(default="fts", description="Database name (MongoDB)")
    key_prefix: str = Field(default="fts:", description="Key prefix (Redis)")
    pool_size: int = Field(default=10, ge=1, le=100, description="Connection pool size")
    timeout_seconds: int = Field(default=30, ge=1, le=300, description="Operation timeout")

    # Expiry
    grace_seconds: int = Field(
        default=DEFAULT_GRACE_SECONDS,
        ge=0,
        description="Seconds a credential is kept past not_after before purge",
    )
    purge_interval_seconds: int = Field(
        default=60, ge=1, description="Seconds between background purge passes"
    )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StoreConfig":
        """Build a configuration from ``DELEGATION_STORE_*`` variables.

        Unset variables keep their defaults.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            key = f"{ENV_PREFIX}{name.upper()}"
            if key in environ:
                values[name] = environ[key]
        return cls(**values)


class AbstractDelegationStore(ABC):
    """
    Abstract delegation store.

    Holds pending proxy requests and issued proxy credentials, at most one
    of each per delegation id. Concrete backends implement the underscore
    hooks; uniqueness must be enforced by the engine itself so concurrent
    inserts resolve to exactly one success.

    Credentials are logically absent from ``not_after`` on, whether or not
    the engine has physically removed them yet.
    """

    def __init__(
        self,
        config: StoreConfig,
        clock: Optional[Callable[[], datetime]] = None,
        metrics: Optional[StoreMetrics] = None,
    ):
        """Initialize the store with configuration."""
        self.config = config
        self._clock = clock or utcnow
        self.metrics = metrics if metrics is not None else StoreMetrics()

    @property
    def grace(self) -> timedelta:
        """Time a credential is kept past ``not_after``."""
        return timedelta(seconds=self.config.grace_seconds)

    def now(self) -> datetime:
        """Current time according to the store clock."""
        return as_utc(self._clock())

    async def __aenter__(self) -> "AbstractDelegationStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    @contextmanager
    def _observe(self, operation: str) -> Iterator[None]:
        outcome = "ok"
        try:
            yield
        except DuplicateDelegationError:
            outcome = "duplicate"
            raise
        except DelegationNotFoundError:
            outcome = "not_found"
            raise
        except CredentialIgnoredError:
            outcome = "ignored"
            raise
        except Exception:
            outcome = "error"
            raise
        finally:
            self.metrics.record_operation(operation, outcome)

    # Lifecycle

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to storage backend."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to storage backend."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if storage backend is healthy. Never raises."""
        pass

    async def initialize_schema(self) -> None:
        """Create collections and indexes if absent. Idempotent."""
        specs = index_specs(self.config.grace_seconds)
        with self._observe("initialize_schema"):
            await self._create_schema(specs)
        logger.info(
            "Schema ready: %s",
            ", ".join(f"{s.collection}.{s.name}" for s in specs),
        )
        logger.warning(
            "%s has no expiry index; stale requests are kept until deleted",
            REQUESTS_COLLECTION,
        )

    # Proxy requests

    async def put_request(self, request: ProxyRequest) -> None:
        """Insert a pending request.

        Raises:
            DuplicateDelegationError: A request already exists for the id.
        """
        with self._observe("put_request"):
            try:
                await self._insert_request(request)
            except DuplicateDelegationError:
                logger.warning("Duplicate proxy request for %s", request.delegation_id)
                raise
        logger.info("Stored proxy request for %s", request.delegation_id)

    async def get_request(self, delegation_id: str) -> ProxyRequest:
        """Return the pending request for ``delegation_id``.

        Raises:
            DelegationNotFoundError: No request is stored for the id.
        """
        with self._observe("get_request"):
            request = await self._find_request(delegation_id)
            if request is None:
                raise DelegationNotFoundError(REQUESTS_COLLECTION, delegation_id)
        logger.debug("Loaded proxy request for %s", delegation_id)
        return request

    async def delete_request(self, delegation_id: str) -> bool:
        """Remove the pending request. Returns whether one existed."""
        with self._observe("delete_request"):
            removed = await self._remove_request(delegation_id)
        if removed:
            logger.info("Deleted proxy request for %s", delegation_id)
        return removed

    # Proxy credentials

    async def put_credential(self, credential: ProxyCredential) -> None:
        """Insert an issued credential.

        Raises:
            DuplicateDelegationError: A credential already exists for the id,
                including one that expired but has not been purged yet.
        """
        with self._observe("put_credential"):
            try:
                await self._insert_credential(credential)
            except DuplicateDelegationError:
                logger.warning("Duplicate proxy credential for %s", credential.delegation_id)
                raise
        logger.info(
            "Stored proxy credential for %s, valid until %s",
            credential.delegation_id,
            credential.not_after.isoformat(),
        )

    async def get_credential(self, delegation_id: str) -> ProxyCredential:
        """Return the live credential for ``delegation_id``.

        Raises:
            DelegationNotFoundError: No credential is stored, or it expired.
        """
        with self._observe("get_credential"):
            credential = await self._find_credential(delegation_id)
            if credential is None or credential.is_expired(self.now()):
                raise DelegationNotFoundError(PROXIES_COLLECTION, delegation_id)
        logger.debug("Loaded proxy credential for %s", delegation_id)
        return credential

    async def update_credential(self, credential: ProxyCredential) -> None:
        """Insert or replace the credential for its delegation id.

        A stored credential that lives longer than ``credential`` is kept.

        Raises:
            CredentialIgnoredError: The stored credential outlives the update.
        """
        with self._observe("update_credential"):
            existing = await self._find_credential(credential.delegation_id)
            if existing is not None and existing.not_after > credential.not_after:
                logger.warning(
                    "Ignored proxy update for %s: stored one valid until %s",
                    credential.delegation_id,
                    existing.not_after.isoformat(),
                )
                raise CredentialIgnoredError(credential.delegation_id)
            await self._replace_credential(credential)
        logger.info(
            "Updated proxy credential for %s, valid until %s",
            credential.delegation_id,
            credential.not_after.isoformat(),
        )

    async def delete_credential(self, delegation_id: str) -> bool:
        """Remove the credential. Returns whether one existed."""
        with self._observe("delete_credential"):
            removed = await self._remove_credential(delegation_id)
        if removed:
            logger.info("Deleted proxy credential for %s", delegation_id)
        return removed

    async def list_delegations(self) -> list[str]:
        """Sorted delegation ids that have a live credential."""
        with self._observe("list_delegations"):
            ids = await self._live_delegation_ids(self.now())
        return sorted(ids)

    async def purge_expired(self) -> int:
        """Remove credentials past ``not_after`` plus grace.

        Returns:
            Number of credentials removed by this pass. Engines with native
            expiry remove records themselves and report 0.
        """
        cutoff = self.now() - self.grace
        with self._observe("purge_expired"):
            removed = await self._purge_before(cutoff)
        self.metrics.record_purge(removed)
        if removed:
            logger.info("Purged %d expired proxy credentials", removed)
        return removed

    # Backend hooks

    @abstractmethod
    async def _create_schema(self, specs: list[IndexSpec]) -> None:
        """Create collections and the given indexes if absent."""

    @abstractmethod
    async def _insert_request(self, request: ProxyRequest) -> None:
        """Insert, raising DuplicateDelegationError on a taken id."""

    @abstractmethod
    async def _find_request(self, delegation_id: str) -> Optional[ProxyRequest]:
        """Load a request, or None."""

    @abstractmethod
    async def _remove_request(self, delegation_id: str) -> bool:
        """Delete a request. Returns whether one existed."""

    @abstractmethod
    async def _insert_credential(self, credential: ProxyCredential) -> None:
        """Insert, raising DuplicateDelegationError on a taken id."""

    @abstractmethod
    async def _find_credential(self, delegation_id: str) -> Optional[ProxyCredential]:
        """Load a stored credential, expired or not, or None."""

    @abstractmethod
    async def _replace_credential(self, credential: ProxyCredential) -> None:
        """Upsert a credential."""

    @abstractmethod
    async def _remove_credential(self, delegation_id: str) -> bool:
        """Delete a credential. Returns whether one existed."""

    @abstractmethod
    async def _live_delegation_ids(self, now: datetime) -> list[str]:
        """Ids of credentials with ``not_after`` after ``now``."""

    @abstractmethod
    async def _purge_before(self, cutoff: datetime) -> int:
        """Delete credentials with ``not_after`` at or before ``cutoff``."""
