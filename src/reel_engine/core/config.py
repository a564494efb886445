"""Application configuration."""

from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # App info
    VERSION: str = "1.0.0"
    APP_NAME: str = "REEL Engine"
    DEBUG: bool = False

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 7870
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Paths
    LIBRARY_PATH: Path = Path.home() / "REEL_LIBRARY"
    DATABASE_URL: str = ""  # Empty means SQLite inside LIBRARY_PATH

    # Stores
    STORE_BACKEND: str = "redis"  # redis, memory
    REDIS_URL: str = "redis://localhost:6379/0"
    QUEUE_PREFIX: str = "reel"
    PROGRESS_TTL_SECONDS: int = 3600
    STORE_TIMEOUT_SECONDS: float = 5.0

    # Job queue
    STAGGER_INTERVAL_MS: int = 1000
    RETRY_BACKOFF_MS: int = 2000
    QUEUE_LEASE_SECONDS: int = 60  # Active jobs without a heartbeat this long are reclaimed
    FAILED_RETENTION_SECONDS: int = 7 * 24 * 3600
    CLEAN_INTERVAL_SECONDS: float = 300.0
    HISTORY_LIMIT: int = 10
    WORKER_IDLE_SLEEP_SECONDS: float = 2.0
    WORKER_CONCURRENCY: int = 1
    EMBEDDED_WORKER: bool = False  # Run workers inside the API process

    # Providers
    SCENE_PROVIDER_URL: str = "http://localhost:9001"
    CLIP_PROVIDER_URL: str = "http://localhost:9002"
    MUSIC_PROVIDER_URL: str = "http://localhost:9003"
    ASSEMBLY_PROVIDER_URL: str = "http://localhost:9004"
    IMAGE_PROVIDER_URL: str = "http://localhost:9005"
    PROVIDER_API_KEY: Optional[str] = None
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_POLL_INTERVAL_SECONDS: float = 5.0
    PROVIDER_MAX_POLLS: int = 180  # 15 minutes at the default interval

    class Config:
        env_prefix = "REEL_"
        env_file = ".env"
        case_sensitive = True

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.LIBRARY_PATH.mkdir(parents=True, exist_ok=True)

        if not self.DATABASE_URL:
            self.DATABASE_URL = f"sqlite+aiosqlite:///{self.LIBRARY_PATH / 'reel.db'}"


settings = Settings()
