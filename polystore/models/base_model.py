"""Base model for persisted entities.

This module defines the common base carrying creation/update timestamps and
primary-key based identity.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import override


class BaseEntity(BaseModel):
    """Base model for all persisted entities.

    Two instances are equal when they share the concrete type and a set
    primary-key value. Instances without a primary key are only equal to
    themselves.
    """

    model_config = ConfigDict(  # pyright: ignore[reportUnannotatedClassAttribute]
        from_attributes=True,
    )

    created_at: datetime | None = Field(
        default=None, description="When this entity was first inserted"
    )
    updated_at: datetime | None = Field(
        default=None, description="When this entity was last written"
    )

    def primary_key(self) -> Any | None:
        """Return the primary-key value, or None when it is unset."""
        return getattr(self, self._primary_key_name())

    def set_primary_key(self, value: Any) -> None:
        """Assign the primary-key value."""
        setattr(self, self._primary_key_name(), value)

    def mark_created(self) -> None:
        """Stamp both timestamps on first insert."""
        now = datetime.now(timezone.utc)
        if self.created_at is None:
            self.created_at = now
        self.updated_at = now

    def mark_updated(self) -> None:
        """Refresh the update timestamp."""
        self.updated_at = datetime.now(timezone.utc)

    @classmethod
    def _primary_key_name(cls) -> str:
        from polystore.metadata.resolver import metadata_resolver

        return metadata_resolver.primary_key_field(cls).name

    @override
    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, BaseEntity) or type(self) is not type(other):
            return False
        a = self.primary_key()
        b = other.primary_key()
        if a is None or b is None:
            return False
        return a == b

    @override
    def __hash__(self) -> int:
        key = self.primary_key()
        if key is None:
            return id(self)
        return hash((type(self), key))

    @override
    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._primary_key_name()}={self.primary_key()!r})"
