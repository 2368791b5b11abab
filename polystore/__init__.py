"""Polymorphic entity persistence over SQL, MongoDB and JSON snapshot files."""

from polystore.core.errors import (
    AssemblyError,
    BatchSaveError,
    DuplicateKeyError,
    MetadataError,
    MissingKeyError,
    NotFoundError,
    SchemaMismatchError,
    StorageError,
    StorageIOError,
    UnsupportedDialectError,
)
from polystore.models import BaseEntity, Index, PrimaryKey, Transient, Unique, data_class
from polystore.repositories import (
    JsonStorage,
    MongoStorage,
    SqlStorage,
    Storage,
    create_storage,
)

__all__ = [
    # Entities
    "BaseEntity",
    "data_class",
    "PrimaryKey",
    "Transient",
    "Index",
    "Unique",
    # Storage
    "Storage",
    "SqlStorage",
    "MongoStorage",
    "JsonStorage",
    "create_storage",
    # Errors
    "StorageError",
    "MetadataError",
    "MissingKeyError",
    "DuplicateKeyError",
    "NotFoundError",
    "StorageIOError",
    "SchemaMismatchError",
    "UnsupportedDialectError",
    "AssemblyError",
    "BatchSaveError",
]
