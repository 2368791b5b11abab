"""Storage settings and configuration."""

from functools import lru_cache
from pathlib import Path
from typing import ClassVar, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

StorageBackend = Literal["sql", "mongodb", "json"]


class Settings(BaseSettings):
    """Storage settings loaded from environment variables."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="POLYSTORE_",
        case_sensitive=False,
        extra="ignore",
    )

    # Backend selection
    storage_backend: StorageBackend = Field(
        default="sql", description="Backend used by create_storage()"
    )

    # Relational database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/polystore.db",
        description="SQLAlchemy async URL (postgresql+asyncpg or sqlite+aiosqlite)",
    )
    database_echo: bool = Field(default=False, description="Echo emitted SQL")
    drop_unknown_columns: bool = Field(
        default=False,
        description="Let schema diffs drop columns no longer declared on the entity",
    )

    # MongoDB
    mongodb_url: str = Field(
        default="mongodb://localhost:27017", description="MongoDB connection string"
    )
    mongodb_database: str = Field(
        default="polystore", description="MongoDB database name"
    )
    mongodb_use_transactions: bool = Field(
        default=False, description="Run insert/update in session transactions"
    )

    # JSON snapshot files
    data_dir: Path = Field(
        default=Path("./data"), description="Directory holding snapshot files"
    )

    # Batch operations
    batch_max_workers: int = Field(
        default=8, ge=1, description="Upper bound of concurrent saves in save_all"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached storage settings."""
    return Settings()
