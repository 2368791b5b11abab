"""JSON snapshot file implementation of the storage protocol.

All entities of a type live in memory and are written to one pretty-printed
JSON file of the form ``{"data": [...]}`` after every mutation. The file is
replaced atomically: the snapshot is written to a sibling ``.tmp`` file which
is then renamed over the original, so readers never see a partial write.
"""

import asyncio
import json
import logging
import os
from collections.abc import Collection, Sequence
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic_core import to_jsonable_python
from typing_extensions import override

from polystore.core.errors import (
    DuplicateKeyError,
    NotFoundError,
    StorageIOError,
)
from polystore.metadata import CodecTarget
from polystore.repositories.base import BaseStorage

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

SNAPSHOT_KEY = "data"
TMP_SUFFIX = ".tmp"

Record = dict[str, Any]


def write_snapshot(path: Path, records: list[Record]) -> None:
    """Atomically replace ``path`` with a snapshot of ``records``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + TMP_SUFFIX)
    payload = json.dumps(
        {SNAPSHOT_KEY: records}, indent=2, ensure_ascii=False, default=to_jsonable_python
    )
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def read_snapshot(path: Path) -> list[Record]:
    """Records of the snapshot at ``path``; an empty file holds none."""
    raw = path.read_text(encoding="utf-8")
    if not raw.strip():
        return []
    document = json.loads(raw)
    if not isinstance(document, dict):
        raise ValueError(f"expected an object with a '{SNAPSHOT_KEY}' list")
    records = document.get(SNAPSHOT_KEY) or []
    if not isinstance(records, list):
        raise ValueError(f"'{SNAPSHOT_KEY}' is not a list")
    return records


class JsonStorage(BaseStorage[T]):
    """Keeps one entity type in memory, mirrored to a JSON snapshot file."""

    target = CodecTarget.SNAPSHOT

    def __init__(
        self,
        entity_type: type[T],
        directory: Path | str,
        *,
        max_workers: int | None = None,
    ):
        super().__init__(entity_type, max_workers)
        self.path: Path = Path(directory) / self.metadata.file_name
        self._records: dict[Any, Record] = {}
        self._lock = asyncio.Lock()

    # ---------- Lifecycle ----------

    @override
    async def init(self) -> None:
        """Load the snapshot, or create an empty one if the file is missing.

        Raises:
            StorageIOError: If the file cannot be read or is not a snapshot.
        """
        async with self._lock:
            try:
                if await asyncio.to_thread(self.path.exists):
                    records = await asyncio.to_thread(read_snapshot, self.path)
                    self._records = {self._record_key(r): r for r in records}
                    logger.info("Loaded %d records from %s", len(self._records), self.path)
                else:
                    self._records = {}
                    await asyncio.to_thread(write_snapshot, self.path, [])
                    logger.info("Created snapshot %s", self.path)
            except (OSError, ValueError) as e:
                raise StorageIOError(f"{self.path}: {e}") from e

    # ---------- Keys ----------

    def _key(self, entity_id: Any) -> Any:
        """Canonical map key of ``entity_id``."""
        return self._marshal_id(entity_id)

    def _snapshot_record(self, entity: T) -> Record:
        """Record of ``entity`` in its on-disk form, sharing no containers with it."""
        return to_jsonable_python(self._to_record(entity))

    def _record_key(self, record: Record) -> Any:
        name = self.metadata.primary_key.name
        if name not in record:
            raise ValueError(f"record without primary key '{name}'")
        return self._key(record[name])

    # ---------- Persistence ----------

    async def _persist(self) -> None:
        """Write the current map. Callers hold the lock."""
        records = list(self._records.values())
        try:
            await asyncio.to_thread(write_snapshot, self.path, records)
        except OSError as e:
            raise StorageIOError(f"{self.path}: {e}") from e
        logger.debug("Persisted %d records to %s", len(records), self.path)

    async def _commit(self, previous: dict[Any, Record]) -> None:
        """Persist, restoring ``previous`` in memory if the write fails."""
        try:
            await self._persist()
        except StorageIOError:
            self._records = previous
            raise

    # ---------- CRUD ----------

    @override
    async def insert(self, entity: T) -> T:
        """Insert a new entity, generating an unset identifier key.

        Raises:
            MissingKeyError: If the key is unset and cannot be generated.
            DuplicateKeyError: If an entity with the same key exists.
            StorageIOError: If the snapshot cannot be written.
        """
        key = self._key(self._ensure_id(entity))
        async with self._lock:
            if key in self._records:
                raise DuplicateKeyError(self._entity_type, key)
            self._mark_created(entity)
            previous = dict(self._records)
            self._records[key] = self._snapshot_record(entity)
            await self._commit(previous)
        return entity

    @override
    async def update(self, entity: T) -> T:
        """Replace an existing entity.

        Raises:
            MissingKeyError: If the primary key is unset.
            NotFoundError: If no entity has the key.
            StorageIOError: If the snapshot cannot be written.
        """
        key = self._key(self._require_id(entity, "update"))
        async with self._lock:
            if key not in self._records:
                raise NotFoundError(self._entity_type, key)
            self._mark_updated(entity)
            previous = dict(self._records)
            self._records[key] = self._snapshot_record(entity)
            await self._commit(previous)
        return entity

    @override
    async def find_by_id(self, entity_id: Any) -> T | None:
        record = self._records.get(self._key(entity_id))
        if record is None:
            return None
        return self._from_record(record)

    @override
    async def find_all(self, limit: int | None = None, offset: int = 0) -> list[T]:
        """Entities in insertion order, ``offset`` skipped, at most ``limit``."""
        if offset < 0 or (limit is not None and limit < 0):
            raise ValueError("limit and offset must be non-negative")
        records = list(self._records.values())
        end = None if limit is None else offset + limit
        return [self._from_record(r) for r in records[offset:end]]

    @override
    async def delete_by_id(self, entity_id: Any) -> bool:
        key = self._key(entity_id)
        async with self._lock:
            if key not in self._records:
                return False
            previous = dict(self._records)
            del self._records[key]
            await self._commit(previous)
        logger.debug("Deleted %s from %s", key, self.path.name)
        return True

    @override
    async def count(self) -> int:
        return len(self._records)

    @override
    async def exists_by_id(self, entity_id: Any) -> bool:
        return self._key(entity_id) in self._records

    # ---------- Batches ----------

    async def _save_batch(self, entities: Sequence[T]) -> list[T]:
        """Upsert every entity in memory, then persist once.

        On a failed write the map is restored, so a batch is all or nothing.
        """
        async with self._lock:
            previous = dict(self._records)
            try:
                for entity in entities:
                    key = self._key(self._ensure_id(entity))
                    if key in self._records:
                        self._mark_updated(entity)
                    else:
                        self._mark_created(entity)
                    self._records[key] = self._snapshot_record(entity)
            except Exception:
                self._records = previous
                raise
            await self._commit(previous)
        return list(entities)

    @override
    async def save_all_parallel(self, entities: Collection[T], workers: int) -> list[T]:
        """Batch upsert with a single snapshot write.

        Only the in-memory update could run in parallel; the write is one
        step either way, so ``workers`` does not change the outcome.
        """
        return await self._save_batch(list(entities))

    @override
    async def save_all_transactional(self, entities: Sequence[T]) -> list[T]:
        return await self._save_batch(entities)
