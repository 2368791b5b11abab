"""Exceptions raised by the storage layer.

Every backend raises the same types, so callers can handle failures without
knowing which backend is active.
"""

from collections.abc import Sequence
from typing import Any


class StorageError(Exception):
    """Base class for all storage errors."""

    pass


class MetadataError(StorageError):
    """Raised when an entity type carries invalid storage metadata."""

    def __init__(self, detail: str = "Invalid entity metadata"):
        super().__init__(detail)


class MissingKeyError(StorageError):
    """Raised when an operation requires a primary key that is not set."""

    def __init__(self, entity_type: type, operation: str = "insert"):
        self.entity_type: type = entity_type
        super().__init__(
            f"Primary key of {entity_type.__name__} must be set for {operation}"
        )


class DuplicateKeyError(StorageError):
    """Raised when an insert collides with an existing primary key."""

    def __init__(self, entity_type: type, key: Any):
        self.entity_type: type = entity_type
        self.key: Any = key
        super().__init__(f"Duplicate primary key for {entity_type.__name__}: {key}")


class NotFoundError(StorageError):
    """Raised when an update targets a primary key that does not exist."""

    def __init__(self, entity_type: type, key: Any):
        self.entity_type: type = entity_type
        self.key: Any = key
        super().__init__(f"{entity_type.__name__} not found: {key}")


class StorageIOError(StorageError):
    """Raised on connection, network or file-system failures.

    Database constraint violations other than primary-key collisions are
    reported as this error as well.
    """

    def __init__(self, detail: str = "Storage I/O failed"):
        super().__init__(detail)


class SchemaMismatchError(StorageError):
    """Raised when the live schema cannot be reconciled with an entity."""

    def __init__(self, detail: str = "Schema does not match entity metadata"):
        super().__init__(detail)


class UnsupportedDialectError(SchemaMismatchError):
    """Raised when the relational database product is not supported."""

    def __init__(self, product: str):
        self.product: str = product
        super().__init__(f"Unsupported DB dialect: {product}")


class AssemblyError(StorageError):
    """Raised when a stored record cannot be turned back into an entity."""

    def __init__(self, detail: str = "Failed to assemble entity"):
        super().__init__(detail)


class BatchSaveError(StorageError):
    """Raised after a batch save in which at least one item failed.

    All items are attempted before this is raised; ``errors`` holds every
    per-item failure and ``results`` the entities that were saved.
    """

    def __init__(self, errors: Sequence[BaseException], results: Sequence[Any]):
        self.errors: list[BaseException] = list(errors)
        self.results: list[Any] = list(results)
        super().__init__(
            f"{len(self.errors)} of {len(self.errors) + len(self.results)} "
            + f"batch saves failed: {self.errors[0]!r}"
        )
