"""Storage metadata markers for entity models.

Field-level markers are attached with ``typing.Annotated``::

    @data_class(table="players", indexes=(Index(columns=("rank", "score")),))
    class Player(BaseEntity):
        id: Annotated[UUID | None, PrimaryKey()] = None
        name: Annotated[str, Unique()] = ""
        score: Annotated[int, Index()] = 0
        session: Annotated[str | None, Transient()] = None

Type-level index declarations go through :func:`data_class`; on field-level
markers ``columns`` is ignored.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T", bound=type)

STORAGE_OPTIONS_ATTR = "__storage_options__"


@dataclass(frozen=True, slots=True)
class PrimaryKey:
    """Marks the primary-key field.

    ``name`` overrides the external document field name; otherwise the key
    is stored as ``_id`` when ``document_id`` is set, else under its own name.
    """

    name: str = ""
    document_id: bool = True


@dataclass(frozen=True, slots=True)
class Transient:
    """Excludes a field from persistence."""


@dataclass(frozen=True, slots=True)
class Index:
    """Declares an index; ``name`` is generated when left empty."""

    name: str = ""
    columns: tuple[str, ...] = ()
    unique: bool = False


@dataclass(frozen=True, slots=True)
class Unique:
    """Declares a unique index; ``name`` is generated when left empty."""

    name: str = ""
    columns: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class StorageOptions:
    """Type-level storage options set by :func:`data_class`."""

    name: str = ""
    table: str = ""
    collection: str = ""
    file: str = ""
    indexes: tuple[Index, ...] = ()
    uniques: tuple[Unique, ...] = ()


def data_class(
    name: str = "",
    *,
    table: str = "",
    collection: str = "",
    file: str = "",
    indexes: Sequence[Index] = (),
    uniques: Sequence[Unique] = (),
) -> Callable[[T], T]:
    """Attach storage options to an entity class.

    Args:
        name: Storage name used by every backend unless overridden.
        table: Relational table name override.
        collection: Document collection name override.
        file: Snapshot file name override, without the ``.json`` suffix.
        indexes: Type-level (multi-column) index declarations.
        uniques: Type-level (multi-column) unique declarations.

    Returns:
        A class decorator.
    """
    options = StorageOptions(
        name=name,
        table=table,
        collection=collection,
        file=file,
        indexes=tuple(indexes),
        uniques=tuple(uniques),
    )

    def decorate(cls: T) -> T:
        setattr(cls, STORAGE_OPTIONS_ATTR, options)
        return cls

    return decorate


def storage_options(cls: type) -> StorageOptions:
    """Return the options declared on ``cls`` itself, ignoring ancestors."""
    options = vars(cls).get(STORAGE_OPTIONS_ATTR)
    if isinstance(options, StorageOptions):
        return options
    return StorageOptions()
