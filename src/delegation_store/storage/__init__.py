"""
Storage backends for the delegation store.

Provides the abstract store interface and its implementations.
"""

from .provider import AbstractDelegationStore, StoreConfig
from .memory_provider import MemoryDelegationStore
from .mongo_provider import MongoDelegationStore
from .postgres_provider import PostgresDelegationStore
from .redis_provider import RedisDelegationStore
from .schema import (
    COLLECTIONS,
    DEFAULT_GRACE_SECONDS,
    PROXIES_COLLECTION,
    REQUESTS_COLLECTION,
    IndexSpec,
    index_specs,
)

__all__ = [
    "AbstractDelegationStore",
    "StoreConfig",
    "MemoryDelegationStore",
    "MongoDelegationStore",
    "PostgresDelegationStore",
    "RedisDelegationStore",
    "COLLECTIONS",
    "DEFAULT_GRACE_SECONDS",
    "PROXIES_COLLECTION",
    "REQUESTS_COLLECTION",
    "IndexSpec",
    "index_specs",
]
