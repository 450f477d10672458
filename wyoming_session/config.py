"""
Configuration management for the Wyoming session client.

This module provides a Settings class that loads configuration from environment
variables, allowing easy configuration without code changes.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    # Transcription server
    host: str = "localhost"
    port: int = Field(default=10300, gt=0, lt=65536)

    # Streaming
    chunk_size: int = Field(default=4096, gt=0)
    read_size: int = Field(default=4096, gt=0)
    max_line_bytes: int = Field(default=1024 * 1024, gt=0)

    # Timeouts (seconds)
    connect_timeout: float = Field(default=5.0, gt=0)
    response_timeout: float = Field(default=30.0, gt=0)

    # Transcription
    language: str | None = None  # None = server default

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="WYOMING_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def uri(self) -> str:
        return f"tcp://{self.host}:{self.port}"


def get_settings() -> Settings:
    """Get the client settings instance."""
    return Settings()
