"""Value conversion between entity fields and backend representations.

Conversions are selected by the *declared* kind of the field, never by the
runtime type of the incoming value, so a stored string only becomes a UUID or
an enum member when the target field expects one.
"""

import types
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum, StrEnum
from typing import Any, Union, get_args, get_origin

from bson.decimal128 import Decimal128

from polystore.core.errors import AssemblyError


class ValueKind(StrEnum):
    """Closed set of value kinds the codec distinguishes."""

    IDENTIFIER = "identifier"
    INSTANT = "instant"
    ENUMERATION = "enumeration"
    DECIMAL = "decimal"
    SCALAR = "scalar"


class CodecTarget(StrEnum):
    """Backend representation a value is marshalled to."""

    RELATIONAL = "relational"
    DOCUMENT = "document"
    SNAPSHOT = "snapshot"


def unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    """Strip ``None`` from a union annotation.

    Returns:
        The remaining type (the union itself when several types remain) and
        whether the annotation admits None.
    """
    if get_origin(annotation) in (Union, types.UnionType):
        args = get_args(annotation)
        rest = tuple(a for a in args if a is not type(None))
        nullable = len(rest) != len(args)
        if len(rest) == 1:
            return rest[0], nullable
        return Union[rest], nullable  # pyright: ignore[reportInvalidTypeArguments]
    return annotation, annotation is None or annotation is type(None)


def value_kind(declared: Any) -> ValueKind:
    """Classify a declared (non-optional) field type."""
    if not isinstance(declared, type):
        return ValueKind.SCALAR
    if issubclass(declared, uuid.UUID):
        return ValueKind.IDENTIFIER
    if issubclass(declared, datetime):
        return ValueKind.INSTANT
    if issubclass(declared, Enum):
        return ValueKind.ENUMERATION
    if issubclass(declared, Decimal):
        return ValueKind.DECIMAL
    return ValueKind.SCALAR


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def marshal(value: Any, kind: ValueKind, target: CodecTarget) -> Any:
    """Convert a native field value to its backend representation."""
    if value is None:
        return None

    if kind is ValueKind.IDENTIFIER:
        return str(value)

    if kind is ValueKind.INSTANT:
        instant = _as_utc(value)
        if target is CodecTarget.RELATIONAL:
            return instant.replace(tzinfo=None)
        if target is CodecTarget.SNAPSHOT:
            return instant.isoformat()
        return instant

    if kind is ValueKind.ENUMERATION:
        return value.name

    if kind is ValueKind.DECIMAL:
        if target is CodecTarget.DOCUMENT:
            return Decimal128(value)
        if target is CodecTarget.SNAPSHOT:
            return str(value)
        return value

    return value


def unmarshal(value: Any, kind: ValueKind, declared: Any, field_name: str = "") -> Any:
    """Convert a backend value back to the declared field type.

    Raises:
        AssemblyError: If the stored value cannot be converted.
    """
    if value is None:
        return None

    try:
        if kind is ValueKind.IDENTIFIER:
            if isinstance(value, uuid.UUID):
                return value
            return uuid.UUID(str(value))

        if kind is ValueKind.INSTANT:
            if isinstance(value, str):
                value = datetime.fromisoformat(value)
            return _as_utc(value)

        if kind is ValueKind.ENUMERATION:
            if isinstance(value, declared):
                return value
            return declared[str(value)]

        if kind is ValueKind.DECIMAL:
            if isinstance(value, Decimal128):
                return value.to_decimal()
            return Decimal(str(value))
    except (ValueError, TypeError, KeyError, InvalidOperation) as e:
        raise AssemblyError(
            f"Cannot convert {value!r} to {kind.value} for field '{field_name}'"
        ) from e

    return value
