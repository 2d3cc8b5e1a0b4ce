from datetime import timedelta
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class IndexerConfig(BaseModel):
    """Immutable configuration of one indexer service instance."""

    model_config = ConfigDict(frozen=True)

    project: str = "etherquery"
    dataset: str = "ethereum"
    batch_interval: timedelta = timedelta(seconds=15)
    batch_size: int = Field(default=500, ge=1)

    max_export_attempts: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    max_reorg_depth: int = Field(default=64, ge=1)
    shutdown_timeout: float = Field(default=10.0, gt=0)
    start_block: int = Field(default=0, ge=0)
    blocks_revision: Optional[int] = None

    @property
    def stream(self) -> str:
        # cursors are kept per export destination
        return f"{self.project}.{self.dataset}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    POSTGRES_USER: str = "etherquery"
    POSTGRES_PASSWORD: str = "etherquery"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432

    DATABASE_URL: str = "sqlite+aiosqlite:///./etherquery_state.db"
    WAREHOUSE_URL: Optional[str] = None
    RPC_URL: str = "http://localhost:8545"
    REDIS_URL: Optional[str] = None

    PROJECT_ID: str = "etherquery"
    DATASET_ID: str = "ethereum"
    BATCH_INTERVAL: timedelta = timedelta(seconds=15)
    BATCH_SIZE: int = 500
    MAX_EXPORT_ATTEMPTS: int = 5
    MAX_REORG_DEPTH: int = 64
    SHUTDOWN_TIMEOUT: float = 10.0
    START_BLOCK: int = 0
    BLOCKS_REVISION: Optional[int] = None
    POLL_INTERVAL: float = 2.0
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 30.0

    LOG_LEVEL: str = "INFO"
    PROJECT_NAME: str = "etherquery"
    API_V1_STR: str = "/api/v1"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    @property
    def warehouse_url(self) -> str:
        if self.WAREHOUSE_URL:
            return self.WAREHOUSE_URL
        # the project is the warehouse database, the dataset its schema
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.PROJECT_ID}"
        )

    def indexer_config(self) -> IndexerConfig:
        return IndexerConfig(
            project=self.PROJECT_ID,
            dataset=self.DATASET_ID,
            batch_interval=self.BATCH_INTERVAL,
            batch_size=self.BATCH_SIZE,
            max_export_attempts=self.MAX_EXPORT_ATTEMPTS,
            retry_base_delay=self.RETRY_BASE_DELAY,
            retry_max_delay=self.RETRY_MAX_DELAY,
            max_reorg_depth=self.MAX_REORG_DEPTH,
            shutdown_timeout=self.SHUTDOWN_TIMEOUT,
            start_block=self.START_BLOCK,
            blocks_revision=self.BLOCKS_REVISION,
        )

@lru_cache()
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
