"""Shared behaviour of all storage backends.

Backends implement the primitive operations; upsert, batch saves and the
entity <-> record mapping live here so that every backend behaves the same
from the caller's perspective.
"""

import asyncio
import logging
import os
import uuid
from abc import ABC, abstractmethod
from collections.abc import Collection, Iterable, Mapping, Sequence
from types import TracebackType
from typing import Any, Generic, Self, TypeVar

from pydantic import BaseModel, ValidationError

from polystore.core.errors import AssemblyError, BatchSaveError, MissingKeyError
from polystore.metadata import (
    CodecTarget,
    EntityMetadata,
    ValueKind,
    marshal,
    resolve_metadata,
    unmarshal,
)
from polystore.models import BaseEntity

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MAX_BATCH_WORKERS = 8


def default_batch_workers(cap: int = MAX_BATCH_WORKERS) -> int:
    """Pool size for batch saves: available parallelism, between 2 and ``cap``."""
    return min(cap, max(2, os.cpu_count() or 1))


class BaseStorage(ABC, Generic[T]):
    """Base class implementing the backend-independent part of Storage."""

    target: CodecTarget

    def __init__(self, entity_type: type[T], max_workers: int | None = None):
        """Initialize the storage handle.

        Args:
            entity_type: The pydantic entity class stored by this handle.
            max_workers: Bound of concurrent saves in save_all; defaults to
                the available parallelism capped at 8.

        Raises:
            MetadataError: If the entity type carries invalid metadata.
        """
        self._entity_type: type[T] = entity_type
        self.metadata: EntityMetadata = resolve_metadata(entity_type)
        self.max_workers: int = max_workers or default_batch_workers()

    @property
    def entity_type(self) -> type[T]:
        return self._entity_type

    @property
    def storage_name(self) -> str:
        return self.metadata.storage_name(self.target)

    # ---------- Lifecycle ----------

    async def init(self) -> None:
        """Prepare the backend. The default does nothing."""

    async def close(self) -> None:
        """Release resources. The default does nothing."""

    async def __aenter__(self) -> Self:
        await self.init()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ---------- Primitive operations ----------

    @abstractmethod
    async def insert(self, entity: T) -> T: ...

    @abstractmethod
    async def update(self, entity: T) -> T: ...

    @abstractmethod
    async def find_by_id(self, entity_id: Any) -> T | None: ...

    @abstractmethod
    async def find_all(self, limit: int | None = None, offset: int = 0) -> list[T]: ...

    @abstractmethod
    async def delete_by_id(self, entity_id: Any) -> bool: ...

    @abstractmethod
    async def count(self) -> int: ...

    @abstractmethod
    async def exists_by_id(self, entity_id: Any) -> bool: ...

    # ---------- Derived operations ----------

    async def upsert(self, entity: T) -> T:
        """Check whether the key exists, then insert or update.

        An unset key goes straight to insert, which either generates one or
        raises MissingKeyError.
        """
        key = self.get_id(entity)
        if key is not None and await self.exists_by_id(key):
            return await self.update(entity)
        return await self.insert(entity)

    async def save(self, entity: T) -> T:
        return await self.upsert(entity)

    async def save_all(self, entities: Collection[T]) -> list[T]:
        """Save concurrently, bounded by ``max_workers``.

        Raises:
            BatchSaveError: After all saves were attempted, if any failed.
        """
        return await self.save_all_parallel(entities, self.max_workers)

    async def save_all_parallel(self, entities: Collection[T], workers: int) -> list[T]:
        """Save concurrently with at most ``workers`` saves in flight.

        No ordering across entities is guaranteed. A failing save does not
        cancel the others.

        Raises:
            BatchSaveError: After all saves were attempted, if any failed.
        """
        semaphore = asyncio.Semaphore(max(1, workers))

        async def save_one(entity: T) -> T:
            async with semaphore:
                return await self.save(entity)

        outcomes = await asyncio.gather(
            *(save_one(e) for e in entities), return_exceptions=True
        )
        return _collect_batch(outcomes)

    async def save_all_transactional(self, entities: Sequence[T]) -> list[T]:
        """Save sequentially, in the given order.

        Backends override this to make the whole batch one atomic unit.
        """
        return [await self.save(e) for e in entities]

    async def delete_all_by_id(self, ids: Collection[Any]) -> int:
        deleted = 0
        for entity_id in ids:
            if await self.delete_by_id(entity_id):
                deleted += 1
        return deleted

    # ---------- Helpers ----------

    def get_id(self, entity: T) -> Any | None:
        """Primary-key value of ``entity``, or None when unset."""
        return getattr(entity, self.metadata.primary_key.name)

    def ids_of(self, entities: Iterable[T]) -> list[Any]:
        """Primary keys of the entities that have one."""
        return [key for key in (self.get_id(e) for e in entities) if key is not None]

    def _require_id(self, entity: T, operation: str) -> Any:
        key = self.get_id(entity)
        if key is None:
            raise MissingKeyError(self._entity_type, operation)
        return key

    def _ensure_id(self, entity: T) -> Any:
        """Return the key, generating a UUID for unset identifier keys."""
        key = self.get_id(entity)
        if key is None and self.metadata.primary_key.kind is ValueKind.IDENTIFIER:
            key = uuid.uuid4()
            setattr(entity, self.metadata.primary_key.name, key)
            logger.debug("Generated key %s for %s", key, self._entity_type.__name__)
        if key is None:
            raise MissingKeyError(self._entity_type, "insert")
        return key

    def _marshal_id(self, entity_id: Any) -> Any:
        """Backend form of a key; ``"ABC"`` and UUID("abc") marshal alike.

        Values that do not parse as the key type are passed through as given.
        """
        spec = self.metadata.primary_key
        try:
            native = unmarshal(entity_id, spec.kind, spec.declared, spec.name)
        except AssemblyError:
            return entity_id
        return marshal(native, spec.kind, self.target)

    def _to_record(self, entity: T) -> dict[str, Any]:
        """Map an entity to ``{field name: backend value}``."""
        return {
            spec.name: marshal(getattr(entity, spec.name), spec.kind, self.target)
            for spec in self.metadata.fields
        }

    def _from_record(self, record: Mapping[str, Any]) -> T:
        """Build an entity from ``{field name: backend value}``.

        Fields missing from the record keep their declared defaults.

        Raises:
            AssemblyError: If a value cannot be converted or validated.
        """
        values: dict[str, Any] = {}
        for spec in self.metadata.fields:
            if spec.name in record:
                values[spec.name] = unmarshal(
                    record[spec.name], spec.kind, spec.declared, spec.name
                )
        try:
            return self._entity_type.model_validate(values)
        except ValidationError as e:
            raise AssemblyError(
                f"Cannot assemble {self._entity_type.__name__}: {e}"
            ) from e

    @staticmethod
    def _mark_created(entity: T) -> None:
        if isinstance(entity, BaseEntity):
            entity.mark_created()

    @staticmethod
    def _mark_updated(entity: T) -> None:
        if isinstance(entity, BaseEntity):
            entity.mark_updated()


def _collect_batch(outcomes: Sequence[Any]) -> list[Any]:
    results: list[Any] = []
    errors: list[BaseException] = []
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            errors.append(outcome)
        else:
            results.append(outcome)
    if errors:
        for error in errors:
            logger.warning("Batch save item failed: %r", error)
        raise BatchSaveError(errors, results)
    return results
