"""
Configuration management for the evidence ingest pipeline.

Uses pydantic-settings to load configuration from environment variables
and .env files.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Persistent store
    database_url: str = "sqlite:///ingest.db"
    database_echo: bool = False

    # Folder preprocessor
    sync_folder_root: str = "."
    file_extensions: str = ""  # comma separated, empty means every extension
    ignore_file_prefix: str = "."
    partial_file_suffix: str = ".partial"

    # Webhook (upload backend)
    webhook_host: str = "localhost:8080"
    webhook_jwt: Optional[str] = None
    webhook_timeout: float = 60.0  # seconds
    webhook_source: str = "generic"
    upload_chunk_size: int = 64 * 1024

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def get_sync_root(self) -> Path:
        """Return the sync root as an absolute Path."""
        root = self.sync_folder_root or "."
        return Path(root).expanduser().absolute()

    def get_file_extensions(self) -> list[str]:
        """Parse the extension allow-list into a list."""
        return parse_extensions(self.file_extensions)


def parse_extensions(raw: Optional[str]) -> list[str]:
    """Split a comma separated extension list, normalising to ``.ext`` form."""
    if not raw:
        return []

    extensions = []
    for ext in raw.split(','):
        ext = ext.strip().lower()
        if not ext:
            continue
        if not ext.startswith('.'):
            ext = '.' + ext
        extensions.append(ext)
    return extensions


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
