"""MongoDB connection management."""

from .connection import close_mongo_client, get_mongo_client, reset_mongo_client

__all__ = ["get_mongo_client", "close_mongo_client", "reset_mongo_client"]
