"""Construction of the configured storage backend."""

import logging
from typing import TypeVar

from pydantic import BaseModel

from polystore.core.settings import Settings, StorageBackend, get_settings
from polystore.db.mongodb import get_mongo_client
from polystore.db.sql import get_engine
from polystore.repositories.json_repository import JsonStorage
from polystore.repositories.mongo_repository import MongoStorage
from polystore.repositories.protocols import Storage
from polystore.repositories.sql import SqlStorage

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def create_storage(
    entity_type: type[T],
    backend: StorageBackend | None = None,
    settings: Settings | None = None,
) -> Storage[T]:
    """Create a storage for ``entity_type`` on the configured backend.

    SQL and MongoDB storages share the process-wide engine or client, which
    they do not close. The returned storage still needs ``await init()``.

    Raises:
        ValueError: If the backend name is unknown.
        MetadataError: If the entity type carries invalid metadata.
    """
    settings = settings or get_settings()
    backend = backend or settings.storage_backend
    workers = settings.batch_max_workers
    logger.debug("Creating %s storage for %s", backend, entity_type.__name__)

    if backend == "sql":
        return SqlStorage(
            entity_type,
            get_engine(settings),
            max_workers=workers,
            drop_unknown_columns=settings.drop_unknown_columns,
        )
    if backend == "mongodb":
        return MongoStorage(
            entity_type,
            get_mongo_client(settings),
            settings.mongodb_database,
            use_transactions=settings.mongodb_use_transactions,
            max_workers=workers,
        )
    if backend == "json":
        return JsonStorage(entity_type, settings.data_dir, max_workers=workers)
    raise ValueError(f"Unknown storage backend: {backend}")
