"""Application configuration from environment variables."""
from datetime import timedelta
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All config comes from env vars or .env.backend file."""

    STORAGE_ROOT: str = "./backend/uploads"
    CATALOG_FILENAME: str = "metadata.json"
    API_PORT: int = 3001
    CORS_ORIGINS: str = "http://localhost:5173"
    LOG_LEVEL: str = "INFO"

    # Uploads
    MAX_UPLOAD_BYTES: int = 50 * 1024 * 1024
    ALLOWED_MIME_TYPES: str = "image/jpeg,image/png,image/webp,image/gif"
    DISK_QUOTA_BYTES: int = 10 * 1024 * 1024 * 1024

    # Retention
    RETENTION_TTL_HOURS: float = 24
    SWEEP_INTERVAL_HOURS: float = 6

    # Processing
    PROCESS_TIMEOUT_SECONDS: float = 30.0
    PROCESS_WORKERS: int = 2

    class Config:
        env_file = ".env.backend"
        env_file_encoding = "utf-8"

    @property
    def allowed_mime_types(self) -> list[str]:
        return [m.strip() for m in self.ALLOWED_MIME_TYPES.split(",") if m.strip()]

    @property
    def storage_root(self) -> Path:
        return Path(self.STORAGE_ROOT)

    @property
    def catalog_path(self) -> Path:
        return self.storage_root / self.CATALOG_FILENAME

    @property
    def retention_ttl(self) -> timedelta:
        return timedelta(hours=self.RETENTION_TTL_HOURS)

    @property
    def sweep_interval_seconds(self) -> float:
        return self.SWEEP_INTERVAL_HOURS * 3600


settings = Settings()
