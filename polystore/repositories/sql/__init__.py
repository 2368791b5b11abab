"""Relational storage backend."""

from .dialect import Dialect
from .schema_inspector import SchemaDiff
from .sql_repository import SqlStorage

__all__ = ["Dialect", "SchemaDiff", "SqlStorage"]
