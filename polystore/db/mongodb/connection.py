"""MongoDB client management."""

import logging

from pymongo import AsyncMongoClient

from polystore.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# Global client instance
_client: AsyncMongoClient | None = None


def get_mongo_client(settings: Settings | None = None) -> AsyncMongoClient:
    """Get the shared MongoDB client, creating it on first use.

    The client connects lazily and is safe for concurrent use.
    """
    global _client
    if _client is None:
        settings = settings or get_settings()
        _client = AsyncMongoClient(
            settings.mongodb_url, tz_aware=True, uuidRepresentation="standard"
        )
        logger.info("Created MongoDB client")
    return _client


async def close_mongo_client() -> None:
    """Close the shared MongoDB client."""
    global _client
    if _client:
        await _client.close()
        _client = None


async def reset_mongo_client() -> None:
    """Reset the MongoDB client for testing purposes."""
    global _client
    if _client:
        try:
            await _client.close()
        finally:
            _client = None
