"""Storage backends."""

from .base import BaseStorage
from .factory import create_storage
from .json_repository import JsonStorage
from .mongo_repository import MongoStorage
from .protocols import Storage
from .sql import SqlStorage

__all__ = [
    "Storage",
    "BaseStorage",
    "SqlStorage",
    "MongoStorage",
    "JsonStorage",
    "create_storage",
]
