# Copyright (c) Delegation Store Contributors. All rights reserved.
# Licensed under the MIT License.
"""Exception hierarchy for the delegation store.

All store exceptions inherit from DelegationStoreError, so callers of the
issuance workflow can catch one base class regardless of the backend.
"""


class DelegationStoreError(Exception):
    """Base exception for all delegation store errors."""


class DuplicateDelegationError(DelegationStoreError):
    """A record already exists for this delegation id."""

    def __init__(self, collection: str, delegation_id: str) -> None:
        self.collection = collection
        self.delegation_id = delegation_id
        super().__init__(
            f"{collection}: delegation id {delegation_id!r} already exists"
        )


class DelegationNotFoundError(DelegationStoreError, KeyError):
    """No live record exists for this delegation id."""

    def __init__(self, collection: str, delegation_id: str) -> None:
        self.collection = collection
        self.delegation_id = delegation_id
        super().__init__(
            f"{collection}: delegation id {delegation_id!r} not found"
        )

    def __str__(self) -> str:
        # KeyError quotes its argument otherwise
        return str(self.args[0])


class CredentialIgnoredError(DelegationStoreError):
    """An update was skipped because the stored credential lives longer."""

    def __init__(self, delegation_id: str) -> None:
        self.delegation_id = delegation_id
        super().__init__(
            f"stored credential for {delegation_id!r} outlives the update, ignored"
        )


class StoreUnavailableError(DelegationStoreError):
    """The storage backend could not be reached."""


__all__ = [
    "DelegationStoreError",
    "DuplicateDelegationError",
    "DelegationNotFoundError",
    "CredentialIgnoredError",
    "StoreUnavailableError",
]
