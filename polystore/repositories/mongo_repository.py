"""MongoDB implementation of the storage protocol."""

import logging
from collections.abc import AsyncIterator, Collection, Mapping, Sequence
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, TypeVar, cast

from pydantic import BaseModel
from pymongo import ASCENDING, AsyncMongoClient
from pymongo.asynchronous.client_session import AsyncClientSession
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.errors import DuplicateKeyError as MongoDuplicateKeyError
from pymongo.errors import PyMongoError
from typing_extensions import override

from polystore.core.errors import DuplicateKeyError, NotFoundError, StorageIOError
from polystore.metadata import (
    DOCUMENT_ID_FIELD,
    CodecTarget,
    IndexDefinition,
    auto_index_name,
    marshal,
)
from polystore.repositories.base import BaseStorage

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

DEFAULT_INDEX = "_id_"

# Session of the transaction opened by transaction() in this task, together
# with the client it belongs to.
_active_session: ContextVar[tuple[AsyncMongoClient, AsyncClientSession] | None] = ContextVar(
    "polystore_mongo_session", default=None
)


class MongoStorage(BaseStorage[T]):
    """Stores one entity type in one MongoDB collection."""

    target = CodecTarget.DOCUMENT

    client: AsyncMongoClient
    collection: AsyncCollection

    def __init__(
        self,
        entity_type: type[T],
        client: AsyncMongoClient,
        database: str,
        *,
        use_transactions: bool = False,
        max_workers: int | None = None,
        owns_client: bool = False,
    ):
        """Initialize the storage.

        Args:
            entity_type: The entity class stored in the collection.
            client: MongoDB client, shared safely between storages.
            database: Name of the database holding the collection.
            use_transactions: Run insert and update in a session transaction.
                Requires a replica set or sharded cluster.
            max_workers: Bound of concurrent saves in save_all.
            owns_client: Close the client on close().
        """
        super().__init__(entity_type, max_workers)
        self.client = client
        self.collection = client[database][self.metadata.collection_name]
        self.use_transactions = use_transactions
        self._owns_client = owns_client

    # ---------- Lifecycle ----------

    @override
    async def init(self) -> None:
        changes = await self.reconcile_indexes()
        logger.info(
            "MongoDB storage ready: collection=%s index_changes=%d",
            self.collection.name,
            len(changes),
        )

    @override
    async def close(self) -> None:
        if self._owns_client:
            await self.client.close()
            logger.info("Closed MongoDB client of %s storage", self.collection.name)

    # ---------- Indexes ----------

    def _index_keys(self, definition: IndexDefinition) -> list[tuple[str, int]]:
        return [
            (self.metadata.document_name(self.metadata.field(column)), ASCENDING)
            for column in definition.columns
        ]

    def _managed_indexes(self) -> list[IndexDefinition]:
        """Declared indexes, plus a unique index on a key stored outside ``_id``."""
        definitions = list(self.metadata.indexes)
        if self.metadata.primary_key_external_name == DOCUMENT_ID_FIELD:
            return definitions
        columns = (self.metadata.primary_key.name,)
        if all(d.shape != (True, columns) for d in definitions):
            name = auto_index_name(self.metadata.collection_name, True, columns)
            definitions.append(IndexDefinition(name=name, unique=True, columns=columns))
        return definitions

    async def reconcile_indexes(self) -> list[str]:
        """Create, keep or recreate declared indexes by name.

        A key stored under its own field name gets a unique index, so the
        server rejects duplicate keys the way it does for ``_id``.

        Returns:
            A description of every change made; empty when nothing changed.
        """
        changes: list[str] = []
        try:
            existing: dict[str, tuple[bool, list[tuple[str, int]]]] = {}
            cursor = await self.collection.list_indexes()
            async for info in cursor:
                name = info["name"]
                if name == DEFAULT_INDEX:
                    continue
                keys = [(k, int(v)) for k, v in info["key"].items()]
                existing[name] = (bool(info.get("unique", False)), keys)

            for definition in self._managed_indexes():
                wanted = (definition.unique, self._index_keys(definition))
                current = existing.get(definition.name)
                if current == wanted:
                    continue
                if current is not None:
                    logger.warning(
                        "Index %s on %s changed; recreating",
                        definition.name,
                        self.collection.name,
                    )
                    await self.collection.drop_index(definition.name)
                    changes.append(f"drop {definition.name}")
                await self.collection.create_index(
                    wanted[1], name=definition.name, unique=definition.unique
                )
                logger.info("Created index %s on %s", definition.name, self.collection.name)
                changes.append(f"create {definition.name}")
        except PyMongoError as e:
            raise StorageIOError(f"{self.collection.name}: {e}") from e
        return changes

    # ---------- Sessions ----------

    def _current_session(self) -> AsyncClientSession | None:
        active = _active_session.get()
        if active is not None and active[0] is self.client:
            return active[1]
        return None

    @asynccontextmanager
    async def _operation(self, transactional: bool = False) -> AsyncIterator[AsyncClientSession | None]:
        """Session for one operation, translating driver errors.

        Joins the task's open transaction when there is one. Otherwise opens a
        session transaction when ``transactional`` is set, and runs without a
        session when it is not.
        """
        current = self._current_session()
        try:
            if current is not None or not transactional:
                yield current
                return
            async with self.client.start_session() as session:
                async with await session.start_transaction():
                    yield session
        except MongoDuplicateKeyError as e:
            details = e.details or {}
            if list(details.get("keyPattern", {})) == [self.metadata.primary_key_external_name]:
                raise DuplicateKeyError(self._entity_type, details.get("keyValue")) from e
            raise StorageIOError(f"{self.collection.name}: {e}") from e
        except PyMongoError as e:
            raise StorageIOError(f"{self.collection.name}: {e}") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncClientSession]:
        """Run a unit of work in one session transaction.

        Commits when the block exits cleanly, aborts and re-raises on any
        exception. Nested use joins the outer transaction.
        """
        current = self._current_session()
        if current is not None:
            yield current
            return

        async with self._operation(transactional=True) as session:
            session = cast(AsyncClientSession, session)
            token = _active_session.set((self.client, session))
            try:
                yield session
            finally:
                _active_session.reset(token)

    # ---------- Mapping ----------

    def _key_filter(self, entity_id: Any) -> dict[str, Any]:
        return {self.metadata.primary_key_external_name: self._marshal_id(entity_id)}

    def _to_document(self, entity: T) -> dict[str, Any]:
        return {
            self.metadata.document_name(spec): marshal(getattr(entity, spec.name), spec.kind, self.target)
            for spec in self.metadata.fields
        }

    def _from_document(self, document: Mapping[str, Any]) -> T:
        record = {
            spec.name: document[self.metadata.document_name(spec)]
            for spec in self.metadata.fields
            if self.metadata.document_name(spec) in document
        }
        return self._from_record(record)

    # ---------- CRUD ----------

    @override
    async def insert(self, entity: T) -> T:
        """Insert a new document, generating an unset identifier key.

        Raises:
            MissingKeyError: If the key is unset and cannot be generated.
            DuplicateKeyError: If a document with the same key exists.
        """
        key = self._ensure_id(entity)
        async with self._operation(self.use_transactions) as session:
            if await self.collection.count_documents(self._key_filter(key), limit=1, session=session):
                raise DuplicateKeyError(self._entity_type, key)
            self._mark_created(entity)
            document = self._to_document(entity)
            logger.debug("Insert %s: %s", self.collection.name, key)
            await self.collection.insert_one(document, session=session)
        return entity

    @override
    async def update(self, entity: T) -> T:
        """Replace an existing document.

        Raises:
            MissingKeyError: If the primary key is unset.
            NotFoundError: If no document has the entity's key.
        """
        key = self._require_id(entity, "update")
        self._mark_updated(entity)
        document = self._to_document(entity)
        async with self._operation(self.use_transactions) as session:
            logger.debug("Update %s: %s", self.collection.name, key)
            result = await self.collection.replace_one(
                self._key_filter(key), document, session=session
            )
        if result.matched_count == 0:
            raise NotFoundError(self._entity_type, key)
        return entity

    @override
    async def find_by_id(self, entity_id: Any) -> T | None:
        async with self._operation() as session:
            document = await self.collection.find_one(self._key_filter(entity_id), session=session)
        if document is None:
            return None
        return self._from_document(document)

    @override
    async def find_all(self, limit: int | None = None, offset: int = 0) -> list[T]:
        """Documents in key order, ``offset`` skipped, at most ``limit``."""
        if offset < 0 or (limit is not None and limit < 0):
            raise ValueError("limit and offset must be non-negative")
        # A zero limit means "no limit" to MongoDB.
        if limit == 0:
            return []

        async with self._operation() as session:
            cursor = self.collection.find({}, session=session).sort(
                self.metadata.primary_key_external_name, ASCENDING
            ).skip(offset)
            if limit is not None:
                cursor = cursor.limit(limit)
            documents = [document async for document in cursor]
        return [self._from_document(document) for document in documents]

    @override
    async def delete_by_id(self, entity_id: Any) -> bool:
        async with self._operation(self.use_transactions) as session:
            result = await self.collection.delete_one(self._key_filter(entity_id), session=session)
        deleted = result.deleted_count > 0
        if deleted:
            logger.debug("Deleted %s: %s", self.collection.name, entity_id)
        return deleted

    @override
    async def count(self) -> int:
        async with self._operation() as session:
            return await self.collection.count_documents({}, session=session)

    @override
    async def exists_by_id(self, entity_id: Any) -> bool:
        async with self._operation() as session:
            found = await self.collection.count_documents(
                self._key_filter(entity_id), limit=1, session=session
            )
        return found > 0

    # ---------- Batches ----------

    @override
    async def save_all_parallel(self, entities: Collection[T], workers: int) -> list[T]:
        """Parallel batch save; sequential when a transaction is open.

        A session cannot run operations concurrently.
        """
        if self._current_session() is not None:
            return await super().save_all_transactional(list(entities))
        return await super().save_all_parallel(entities, workers)

    @override
    async def save_all_transactional(self, entities: Sequence[T]) -> list[T]:
        """Save in the given order inside one session transaction."""
        async with self.transaction():
            return await super().save_all_transactional(entities)
