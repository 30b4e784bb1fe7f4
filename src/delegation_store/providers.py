"""
Backend Discovery for the delegation store.

Maps ``StoreConfig.backend`` to a store class. Besides the built-in
backends, packages can contribute their own through the
``delegation_store.backends`` entry point group.

Usage:
    from delegation_store.providers import create_store

    store = create_store(StoreConfig.from_env())
"""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, Optional, Type

from delegation_store.storage import (
    AbstractDelegationStore,
    MemoryDelegationStore,
    MongoDelegationStore,
    PostgresDelegationStore,
    RedisDelegationStore,
    StoreConfig,
)

logger = logging.getLogger(__name__)

BACKEND_GROUP = "delegation_store.backends"

BUILTIN_BACKENDS: Dict[str, Type[AbstractDelegationStore]] = {
    "memory": MemoryDelegationStore,
    "mongodb": MongoDelegationStore,
    "postgres": PostgresDelegationStore,
    "redis": RedisDelegationStore,
}

_backend_cache: Dict[str, Optional[Type[AbstractDelegationStore]]] = {}


def _discover_backend(name: str) -> Optional[Type[AbstractDelegationStore]]:
    """Discover a third-party backend via entry_points."""
    if name in _backend_cache:
        return _backend_cache[name]

    backend_cls = None
    try:
        for ep in entry_points(group=BACKEND_GROUP):
            if ep.name == name:
                backend_cls = ep.load()
                logger.info("Store backend loaded: %s from %s", ep.name, ep.value)
                break
    except Exception:
        logger.debug("Backend discovery failed for %s", name, exc_info=True)

    _backend_cache[name] = backend_cls
    return backend_cls


def create_store(config: Optional[StoreConfig] = None, **kwargs: Any) -> AbstractDelegationStore:
    """Build the store named by ``config.backend``.

    Extra keyword arguments (``clock``, ``metrics``, driver clients) are
    passed to the store class.

    Raises:
        ValueError: If no backend has that name.
    """
    config = config or StoreConfig()
    store_cls = BUILTIN_BACKENDS.get(config.backend) or _discover_backend(config.backend)
    if store_cls is None:
        known = ", ".join(sorted(BUILTIN_BACKENDS))
        raise ValueError(f"Unknown store backend {config.backend!r} (known: {known})")
    return store_cls(config, **kwargs)


def list_backends() -> list[str]:
    """Names of built-in and installed backends."""
    names = set(BUILTIN_BACKENDS)
    try:
        names.update(ep.name for ep in entry_points(group=BACKEND_GROUP))
    except Exception:
        logger.debug("Backend listing failed", exc_info=True)
    return sorted(names)


def clear_cache() -> None:
    """Clear the backend cache. Useful for testing."""
    _backend_cache.clear()
