"""Relational database connection management with SQLAlchemy."""

from .connection import close_engine, create_engine, get_engine, reset_engine

__all__ = ["create_engine", "get_engine", "close_engine", "reset_engine"]
