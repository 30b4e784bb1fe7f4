"""
Delegation Store - durable storage for X.509 proxy delegation.

Holds pending proxy requests and issued proxy credentials keyed by
delegation id, with one record of each per id and automatic expiry of
issued credentials.
"""

__version__ = "1.0.0"

from .exceptions import (
    CredentialIgnoredError,
    DelegationNotFoundError,
    DelegationStoreError,
    DuplicateDelegationError,
    StoreUnavailableError,
)
from .expiry import ExpiryMonitor
from .models import ProxyCredential, ProxyRequest
from .observability import StoreMetrics
from .providers import create_store
from .storage import (
    AbstractDelegationStore,
    MemoryDelegationStore,
    MongoDelegationStore,
    PostgresDelegationStore,
    RedisDelegationStore,
    StoreConfig,
)

__all__ = [
    "__version__",
    "AbstractDelegationStore",
    "CredentialIgnoredError",
    "DelegationNotFoundError",
    "DelegationStoreError",
    "DuplicateDelegationError",
    "ExpiryMonitor",
    "MemoryDelegationStore",
    "MongoDelegationStore",
    "PostgresDelegationStore",
    "ProxyCredential",
    "ProxyRequest",
    "RedisDelegationStore",
    "StoreConfig",
    "StoreMetrics",
    "StoreUnavailableError",
    "create_store",
]
