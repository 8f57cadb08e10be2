"""
Error taxonomy for store operations.

NotFound and InvalidArgument are caller errors: they are raised before any
state is touched. StorageFailure wraps a failed durable write; the in-memory
state is left as it was before the operation.
"""


class StoreError(Exception):
    """Base class for all store errors."""


class NotFound(StoreError):
    """A referenced conversation or message does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidArgument(StoreError):
    """An argument was rejected by validation."""


class StorageFailure(StoreError):
    """The underlying database write failed and was rolled back."""
