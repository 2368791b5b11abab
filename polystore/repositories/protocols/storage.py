"""Protocol definition for entity storage operations."""

from collections.abc import Collection, Sequence
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel

T = TypeVar("T", bound=BaseModel)


class Storage(Protocol[T]):
    """Protocol for a storage handle bound to one entity type.

    This protocol defines the operations every backend implements with the
    same semantics. Implementations include SqlStorage, MongoStorage and
    JsonStorage.
    """

    @property
    def entity_type(self) -> type[T]:
        """The entity type this handle stores."""
        ...

    async def init(self) -> None:
        """Prepare the backend (schema, indexes, snapshot file). Call once."""
        ...

    async def close(self) -> None:
        """Release connections and clients."""
        ...

    async def insert(self, entity: T) -> T:
        """Insert a new entity; fails if its primary key already exists."""
        ...

    async def update(self, entity: T) -> T:
        """Replace an existing entity; fails if its primary key is unknown."""
        ...

    async def upsert(self, entity: T) -> T:
        """Insert or update depending on whether the key exists."""
        ...

    async def save(self, entity: T) -> T:
        """Alias of upsert."""
        ...

    async def save_all(self, entities: Collection[T]) -> list[T]:
        """Upsert concurrently with bounded parallelism, no shared transaction."""
        ...

    async def save_all_parallel(self, entities: Collection[T], workers: int) -> list[T]:
        """Upsert concurrently with at most `workers` saves in flight."""
        ...

    async def save_all_transactional(self, entities: Sequence[T]) -> list[T]:
        """Upsert sequentially, in order, as one atomic unit."""
        ...

    async def find_by_id(self, entity_id: Any) -> T | None:
        """Find an entity by its primary key."""
        ...

    async def find_all(self, limit: int | None = None, offset: int = 0) -> list[T]:
        """List entities in backend order, bounded by limit/offset."""
        ...

    async def delete_by_id(self, entity_id: Any) -> bool:
        """Delete an entity by its primary key. Returns True if deleted."""
        ...

    async def delete_all_by_id(self, ids: Collection[Any]) -> int:
        """Delete several entities. Returns the number deleted."""
        ...

    async def count(self) -> int:
        """Count stored entities."""
        ...

    async def exists_by_id(self, entity_id: Any) -> bool:
        """Check whether an entity with this primary key exists."""
        ...
