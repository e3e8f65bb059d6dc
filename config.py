from __future__ import annotations

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices
from typing import Optional


BASE_DIR = Path(__file__).parent.resolve()

class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    base_dir: Path = BASE_DIR
    # Server-side canonical store (memories + processing jobs)
    db_path: Path = Field(
        default=BASE_DIR / "memories.db",
        validation_alias=AliasChoices('db_path', 'MEMORIES_DB_PATH')
    )
    # Client-side outbox of captures that have not been confirmed yet
    queue_db_path: Path = Field(
        default=BASE_DIR / "offline_queue.db",
        validation_alias=AliasChoices('queue_db_path', 'MEMORIES_QUEUE_DB_PATH')
    )
    # Object storage root; one sub-directory per bucket
    media_dir: Path = Field(
        default=BASE_DIR / "media",
        validation_alias=AliasChoices('media_dir', 'MEMORIES_MEDIA_DIR')
    )
    media_base_url: str = Field(
        default="http://localhost:8082/media",
        validation_alias=AliasChoices('media_base_url', 'MEDIA_BASE_URL')
    )
    photos_bucket: str = "memories-photos"
    videos_bucket: str = "memories-videos"
    audio_bucket: str = "memories-audio"
    # Maximum size (in bytes) for any uploaded media file
    max_file_size: int = 200 * 1024 * 1024  # 200MB default

    # Capture limits
    max_photos: int = 10
    max_videos: int = 3

    # Media upload: attempts per file, each bounded by the timeout
    upload_max_attempts: int = Field(
        default=3,
        validation_alias=AliasChoices('upload_max_attempts', 'UPLOAD_MAX_ATTEMPTS')
    )
    upload_timeout_seconds: float = Field(
        default=30.0,
        validation_alias=AliasChoices('upload_timeout_seconds', 'UPLOAD_TIMEOUT_SECONDS')
    )
    upload_retry_base_delay: float = 1.0  # 1s, 2s, 4s...

    # Offline sync
    sync_max_attempts: int = Field(
        default=3,
        validation_alias=AliasChoices('sync_max_attempts', 'SYNC_MAX_ATTEMPTS')
    )
    sync_backoff_base_seconds: float = Field(
        default=2.0,
        validation_alias=AliasChoices('sync_backoff_base_seconds', 'SYNC_BACKOFF_BASE_SECONDS')
    )
    sync_backoff_max_seconds: float = Field(
        default=300.0,
        validation_alias=AliasChoices('sync_backoff_max_seconds', 'SYNC_BACKOFF_MAX_SECONDS')
    )
    sync_interval_seconds: int = Field(
        default=30,
        validation_alias=AliasChoices('sync_interval_seconds', 'SYNC_INTERVAL_SECONDS')
    )

    # Connectivity probe
    connectivity_check_url: str = Field(
        default="http://localhost:8082/health",
        validation_alias=AliasChoices('connectivity_check_url', 'CONNECTIVITY_CHECK_URL')
    )
    connectivity_timeout_seconds: float = 5.0

    # Processing dispatch
    dispatch_batch_size: int = Field(
        default=10,
        validation_alias=AliasChoices('dispatch_batch_size', 'DISPATCH_BATCH_SIZE')
    )
    dispatch_max_attempts: int = Field(
        default=3,
        validation_alias=AliasChoices('dispatch_max_attempts', 'DISPATCH_MAX_ATTEMPTS')
    )
    # A claim older than this is considered abandoned and may be re-claimed
    dispatch_claim_timeout_seconds: int = 600

    # LLM processing (Ollama)
    ollama_api_url: str = "http://localhost:11434/api/generate"
    ollama_model: str = "llama3.2"
    ollama_timeout_seconds: int = 60
    title_generation_model: str = Field(
        default="llama3.2",
        validation_alias=AliasChoices('title_generation_model', 'TITLE_GENERATION_MODEL')
    )
    max_title_length: int = 60

    # Default owner for single-user deployments
    default_user_id: str = Field(
        default="local-user",
        validation_alias=AliasChoices('default_user_id', 'DEFAULT_USER_ID')
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices('log_level', 'LOG_LEVEL')
    )
    log_file: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices('log_file', 'LOG_FILE')
    )

    environment: str = Field(
        default="development",
        validation_alias=AliasChoices('environment', 'ENVIRONMENT', 'ENV')
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() in ('production', 'prod')

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"   # prevents crashes if other stray keys exist
    )

settings = Settings()

def get_settings() -> Settings:
    """Get application settings instance"""
    return settings
