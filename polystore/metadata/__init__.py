"""Entity metadata, index resolution and value conversion."""

from .codec import CodecTarget, ValueKind, marshal, unmarshal, unwrap_optional, value_kind
from .indexes import IndexDefinition, auto_index_name, resolve_indexes
from .resolver import (
    DOCUMENT_ID_FIELD,
    EntityMetadata,
    FieldSpec,
    MetadataResolver,
    metadata_resolver,
    resolve_metadata,
)

__all__ = [
    # Resolver
    "MetadataResolver",
    "metadata_resolver",
    "resolve_metadata",
    "EntityMetadata",
    "FieldSpec",
    "DOCUMENT_ID_FIELD",
    # Indexes
    "IndexDefinition",
    "auto_index_name",
    "resolve_indexes",
    # Codec
    "CodecTarget",
    "ValueKind",
    "marshal",
    "unmarshal",
    "unwrap_optional",
    "value_kind",
]
