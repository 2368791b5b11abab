"""Entity base model and storage metadata markers."""

from .base_model import BaseEntity
from .markers import (
    Index,
    PrimaryKey,
    StorageOptions,
    Transient,
    Unique,
    data_class,
    storage_options,
)

__all__ = [
    "BaseEntity",
    "data_class",
    "storage_options",
    "StorageOptions",
    # Field markers
    "PrimaryKey",
    "Transient",
    "Index",
    "Unique",
]
