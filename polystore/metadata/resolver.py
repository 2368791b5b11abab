"""Entity metadata resolution.

Derives, per entity type, the storage names, primary key, persisted fields
and indexes from the model's fields and markers. Derivations are computed on
first use and cached for the life of the process.
"""

import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from pydantic_core import PydanticUndefined

from polystore.core.errors import MetadataError
from polystore.metadata.codec import CodecTarget, ValueKind, unwrap_optional, value_kind
from polystore.metadata.indexes import IndexDefinition, resolve_indexes
from polystore.models.markers import Index, PrimaryKey, Transient, Unique, storage_options

logger = logging.getLogger(__name__)

DOCUMENT_ID_FIELD = "_id"


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """A persisted field and everything the backends need to map it."""

    name: str
    declared: Any
    kind: ValueKind
    nullable: bool
    has_default: bool
    default: Any
    markers: tuple[object, ...]


@dataclass(frozen=True, slots=True)
class EntityMetadata:
    """Immutable storage description of one entity type."""

    entity_type: type[BaseModel]
    name: str
    table_name: str
    collection_name: str
    file_name: str
    primary_key: FieldSpec
    primary_key_external_name: str
    fields: tuple[FieldSpec, ...]
    indexes: tuple[IndexDefinition, ...]

    def storage_name(self, target: CodecTarget | None = None) -> str:
        """Return the table, collection or file name for ``target``."""
        if target is CodecTarget.RELATIONAL:
            return self.table_name
        if target is CodecTarget.DOCUMENT:
            return self.collection_name
        if target is CodecTarget.SNAPSHOT:
            return self.file_name
        return self.name

    def field(self, name: str) -> FieldSpec:
        """Look up a persisted field by name."""
        for spec in self.fields:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def document_name(self, spec: FieldSpec) -> str:
        """External document field name of ``spec``."""
        if spec.name == self.primary_key.name:
            return self.primary_key_external_name
        return spec.name


_STORAGE_MARKERS = (PrimaryKey, Transient, Index, Unique)


class MetadataResolver:
    """Resolves and caches :class:`EntityMetadata` per entity type.

    The cache is append-only; the set of entity types is fixed by the
    application, so entries are never evicted.
    """

    def __init__(self) -> None:
        self._cache: dict[type, EntityMetadata] = {}
        self._lock: threading.Lock = threading.Lock()

    def resolve(self, entity_type: type) -> EntityMetadata:
        """Return the metadata of ``entity_type``, deriving it on first use.

        Raises:
            MetadataError: If the type is not a pydantic model, has no primary
                key, or declares inconsistent indexes.
        """
        cached = self._cache.get(entity_type)
        if cached is not None:
            return cached
        with self._lock:
            cached = self._cache.get(entity_type)
            if cached is None:
                cached = _derive(entity_type)
                self._cache[entity_type] = cached
                logger.debug(
                    "Resolved metadata for %s: %d fields, %d indexes",
                    entity_type.__name__,
                    len(cached.fields),
                    len(cached.indexes),
                )
            return cached

    def storage_name(self, entity_type: type, target: CodecTarget | None = None) -> str:
        return self.resolve(entity_type).storage_name(target)

    def primary_key_field(self, entity_type: type) -> FieldSpec:
        return self.resolve(entity_type).primary_key

    def primary_key_external_name(self, entity_type: type) -> str:
        return self.resolve(entity_type).primary_key_external_name

    def persisted_fields(self, entity_type: type) -> tuple[FieldSpec, ...]:
        return self.resolve(entity_type).fields

    def indexes_for(self, entity_type: type) -> tuple[IndexDefinition, ...]:
        return self.resolve(entity_type).indexes


def _walk_fields(entity_type: type[BaseModel]) -> list[str]:
    """Field names in discovery order: the class's own fields, then ancestors'."""
    model_fields = entity_type.model_fields
    seen: list[str] = []
    for klass in entity_type.__mro__:
        if klass is BaseModel or not issubclass(klass, BaseModel):
            continue
        for name in inspect.get_annotations(klass):
            if name in model_fields and name not in seen:
                seen.append(name)
    # Fields pydantic knows about but no class annotated directly (e.g. created
    # by create_model) keep pydantic's order at the end.
    seen.extend(name for name in model_fields if name not in seen)
    return seen


def _derive(entity_type: type) -> EntityMetadata:
    if not (isinstance(entity_type, type) and issubclass(entity_type, BaseModel)):
        raise MetadataError(f"{entity_type!r} is not a pydantic model")

    fields: list[FieldSpec] = []
    primary_key: PrimaryKey | None = None
    primary_field: FieldSpec | None = None

    for name in _walk_fields(entity_type):
        info = entity_type.model_fields[name]
        markers = tuple(m for m in info.metadata if isinstance(m, _STORAGE_MARKERS))
        pk_marker = next((m for m in markers if isinstance(m, PrimaryKey)), None)
        transient = any(isinstance(m, Transient) for m in markers)

        if transient:
            if pk_marker is not None:
                raise MetadataError(
                    f"Primary key '{name}' of {entity_type.__name__} cannot be transient"
                )
            continue

        declared, nullable = unwrap_optional(info.annotation)
        has_default = info.default is not PydanticUndefined
        spec = FieldSpec(
            name=name,
            declared=declared,
            kind=value_kind(declared),
            nullable=nullable,
            has_default=has_default,
            default=info.default if has_default else None,
            markers=markers,
        )
        fields.append(spec)
        if pk_marker is not None and primary_field is None:
            primary_key, primary_field = pk_marker, spec

    if primary_field is None or primary_key is None:
        raise MetadataError(f"No @PrimaryKey on {entity_type.__name__}")

    if primary_key.name:
        external = primary_key.name
    elif primary_key.document_id:
        external = DOCUMENT_ID_FIELD
    else:
        external = primary_field.name

    options = storage_options(entity_type)
    default_name = options.name or entity_type.__name__.lower()
    table_name = options.table or default_name

    return EntityMetadata(
        entity_type=entity_type,
        name=default_name,
        table_name=table_name,
        collection_name=options.collection or default_name,
        file_name=f"{options.file or default_name}.json",
        primary_key=primary_field,
        primary_key_external_name=external,
        fields=tuple(fields),
        indexes=resolve_indexes(
            table_name, ((f.name, f.markers) for f in fields), options
        ),
    )


metadata_resolver = MetadataResolver()


def resolve_metadata(entity_type: type) -> EntityMetadata:
    """Resolve ``entity_type`` through the process-wide resolver."""
    return metadata_resolver.resolve(entity_type)
