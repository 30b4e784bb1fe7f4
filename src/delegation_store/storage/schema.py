# Copyright (c) Delegation Store Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Persistent layout of the delegation store.

Every backend creates the same two collections and the same three
indexes. Backends translate these declarations into their own primitives
(MongoDB indexes, SQL indexes, Redis key namespaces).
"""

from dataclasses import dataclass
from typing import Optional

PROXIES_COLLECTION = "x509_proxies"
REQUESTS_COLLECTION = "x509_proxy_requests"

DEFAULT_GRACE_SECONDS = 600


@dataclass(frozen=True)
class IndexSpec:
    """A single-field ascending index."""

    collection: str
    field: str
    name: str
    unique: bool = False
    expire_after_seconds: Optional[int] = None

    @property
    def is_ttl(self) -> bool:
        return self.expire_after_seconds is not None


def index_specs(grace_seconds: int = DEFAULT_GRACE_SECONDS) -> list[IndexSpec]:
    """Indexes of the store, with the TTL grace applied to ``not_after``."""
    return [
        IndexSpec(PROXIES_COLLECTION, "delegation_id", "delegation_id_unique", unique=True),
        IndexSpec(REQUESTS_COLLECTION, "delegation_id", "delegation_id_unique", unique=True),
        IndexSpec(
            PROXIES_COLLECTION,
            "not_after",
            "not_after_ttl",
            expire_after_seconds=grace_seconds,
        ),
    ]


COLLECTIONS = (PROXIES_COLLECTION, REQUESTS_COLLECTION)
