"""Index definition resolution.

Field-level and type-level index declarations are collected into one
normalized, deduplicated list. Order is deterministic so that reconciling the
same entity twice produces identical results.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from polystore.core.errors import MetadataError
from polystore.models.markers import Index, StorageOptions, Unique


@dataclass(frozen=True, slots=True)
class IndexDefinition:
    """A named index over an ordered list of columns."""

    name: str
    unique: bool
    columns: tuple[str, ...]

    @property
    def shape(self) -> tuple[bool, tuple[str, ...]]:
        """Uniqueness and columns, the part compared against live catalogs."""
        return self.unique, self.columns


def auto_index_name(storage_name: str, unique: bool, columns: Sequence[str]) -> str:
    """Generate the default name for an index declaration."""
    prefix = "uq_" if unique else "idx_"
    return f"{prefix}{storage_name}_{'_'.join(columns)}"


def _normalize(
    storage_name: str, name: str, unique: bool, columns: Sequence[str]
) -> IndexDefinition:
    cols = tuple(columns)
    return IndexDefinition(
        name=name.strip() or auto_index_name(storage_name, unique, cols),
        unique=unique,
        columns=cols,
    )


def resolve_indexes(
    storage_name: str,
    field_markers: Iterable[tuple[str, Sequence[object]]],
    options: StorageOptions,
) -> tuple[IndexDefinition, ...]:
    """Resolve all index declarations of an entity type.

    Args:
        storage_name: Name used as part of generated index names.
        field_markers: ``(field name, metadata markers)`` per persisted field,
            in field discovery order.
        options: Type-level options carrying multi-column declarations.

    Returns:
        Definitions in first-seen order, deduplicated by (unique, columns).

    Raises:
        MetadataError: If a type-level declaration names an unknown column or
            two different definitions share a name.
    """
    collected: list[IndexDefinition] = []
    known_columns: set[str] = set()

    for field_name, markers in field_markers:
        known_columns.add(field_name)
        for marker in markers:
            if isinstance(marker, Index):
                collected.append(
                    _normalize(storage_name, marker.name, marker.unique, [field_name])
                )
        for marker in markers:
            if isinstance(marker, Unique):
                collected.append(_normalize(storage_name, marker.name, True, [field_name]))

    type_level: list[tuple[str, bool, tuple[str, ...]]] = [
        (idx.name, idx.unique, tuple(idx.columns)) for idx in options.indexes
    ]
    type_level.extend((uq.name, True, tuple(uq.columns)) for uq in options.uniques)
    for name, unique, columns in type_level:
        if not columns:
            continue
        unknown = [c for c in columns if c not in known_columns]
        if unknown:
            raise MetadataError(
                f"Index on '{storage_name}' references unknown columns: {unknown}"
            )
        collected.append(_normalize(storage_name, name, unique, columns))

    deduped: dict[tuple[bool, tuple[str, ...]], IndexDefinition] = {}
    for definition in collected:
        deduped.setdefault(definition.shape, definition)

    by_name: dict[str, IndexDefinition] = {}
    for definition in deduped.values():
        existing = by_name.setdefault(definition.name, definition)
        if existing is not definition:
            raise MetadataError(
                f"Index name '{definition.name}' is declared twice on '{storage_name}'"
            )

    return tuple(deduped.values())
