"""
Configuration and settings for the synchronization engine.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

FAST_BACKENDS = ("memory", "firebase", "redis")
DURABLE_BACKENDS = ("memory", "firestore", "sql")


class Settings(BaseSettings):
    """Environment-backed settings (``DUALSYNC_*`` variables or ``.env``)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DUALSYNC_",
        extra="ignore",
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")

    # Which implementation backs each store.
    fast_store_backend: str = Field(default="memory")
    durable_store_backend: str = Field(default="memory")

    # Firebase (Realtime Database + Firestore). Credentials are handed to the
    # Admin SDK as-is; application default credentials when no file is set.
    firebase_app_name: str = Field(default="dualsync")
    firebase_database_url: Optional[str] = Field(default=None)
    firebase_project_id: Optional[str] = Field(default=None)
    firebase_credentials_file: Optional[str] = Field(default=None)

    # Redis FastStore
    redis_url: Optional[str] = Field(default=None)
    redis_key_prefix: str = Field(default="dualsync:")

    # SQL DurableStore (Postgres expected, SQLite for local runs)
    database_url: Optional[str] = Field(default=None)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
