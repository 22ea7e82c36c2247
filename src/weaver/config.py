from typing import List, Literal
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from weaver.logging import NOISY_LOGGERS


class StorageConfig(BaseModel):
    """
    Explicit configuration handed to the orchestrator and its collaborators.

    Built once at the edge (CLI / bootstrap) and passed in at construction;
    core logic never reads the process environment.
    """
    model_config = ConfigDict(frozen=True)

    write_timeout_seconds: float = 5.0
    response_budget_seconds: float = 3.0
    backup_enabled: bool = True
    backup_timeout_seconds: float = 60.0
    backup_retries: int = Field(3, ge=1)
    backup_backoff_seconds: float = 1.0
    backup_workers: int = Field(2, ge=1)
    backup_queue_limit: int = Field(16, ge=1)
    ipfs_api_url: str = "http://127.0.0.1:5001"
    ipfs_gateway_url: str = "https://ipfs.io/ipfs/"
    ipfs_pin: bool = True
    session_ttl_seconds: int = 24 * 60 * 60
    sweep_grace_seconds: int = 60 * 60
    max_file_size_bytes: int = 50 * 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    LOG_LEVEL: str = Field("INFO", description="Root log level")
    LOG_QUIET_LOGGERS: List[str] = Field(
        default_factory=lambda: list(NOISY_LOGGERS),
        description="Libraries held at WARNING regardless of LOG_LEVEL",
    )
    DATABASE_URL: str = Field("sqlite:///data/weaver.db", description="Metadata store URL")

    OBJECT_STORE_BACKEND: Literal["local", "s3"] = Field("local", description="Primary object store")
    OBJECT_STORE_PATH: str = Field("data/objects", description="Root directory for the local object store")
    S3_BUCKET: str = Field("memory-weaver-files", description="Bucket for the S3-compatible store (e.g. R2)")
    S3_ENDPOINT_URL: str | None = Field(None, description="Custom endpoint, e.g. https://<account>.r2.cloudflarestorage.com")
    S3_REGION: str = Field("auto", description="Region name passed to boto3")
    S3_ACCESS_KEY_ID: SecretStr | None = Field(None, description="S3 access key")
    S3_SECRET_ACCESS_KEY: SecretStr | None = Field(None, description="S3 secret key")

    BACKUP_ENABLED: bool = Field(True, description="Push new files to the IPFS backup network")
    IPFS_API_URL: str = Field("http://127.0.0.1:5001", description="IPFS HTTP API base URL")
    IPFS_GATEWAY_URL: str = Field("https://ipfs.io/ipfs/", description="Public gateway used to build backup URLs")
    IPFS_PIN: bool = Field(True, description="Request a pin after add")
    BACKUP_TIMEOUT_SECONDS: float = Field(60.0, description="Per-attempt backup timeout")
    BACKUP_RETRIES: int = Field(3, description="Backup attempts before giving up")
    BACKUP_BACKOFF_SECONDS: float = Field(1.0, description="Base of the exponential backoff")
    BACKUP_WORKERS: int = Field(2, description="Detached backup worker threads")
    BACKUP_QUEUE_LIMIT: int = Field(16, description="Detached backups allowed in flight before new ones are left to the sweep")

    SESSION_CACHE_BACKEND: Literal["memory", "redis"] = Field("memory", description="Upload session cache")
    REDIS_URL: str = Field("redis://localhost:6379/0", description="Redis URL for the session cache")
    SESSION_TTL_SECONDS: int = Field(24 * 60 * 60, description="Upload session lifetime")

    WRITE_TIMEOUT_SECONDS: float = Field(5.0, description="Timeout for primary writes on the response path")
    RESPONSE_BUDGET_SECONDS: float = Field(3.0, description="Interactive acknowledgment budget")
    SWEEP_GRACE_SECONDS: int = Field(60 * 60, description="Age before the sweep touches a blob or file row")
    MAX_FILE_SIZE_BYTES: int = Field(50 * 1024 * 1024, description="Largest accepted upload")

    DISCORD_BOT_TOKEN: SecretStr | None = Field(None, description="Bot token for display-name lookups")

    def storage_config(self) -> StorageConfig:
        return StorageConfig(
            write_timeout_seconds=self.WRITE_TIMEOUT_SECONDS,
            response_budget_seconds=self.RESPONSE_BUDGET_SECONDS,
            backup_enabled=self.BACKUP_ENABLED,
            backup_timeout_seconds=self.BACKUP_TIMEOUT_SECONDS,
            backup_retries=self.BACKUP_RETRIES,
            backup_backoff_seconds=self.BACKUP_BACKOFF_SECONDS,
            backup_workers=self.BACKUP_WORKERS,
            backup_queue_limit=self.BACKUP_QUEUE_LIMIT,
            ipfs_api_url=self.IPFS_API_URL,
            ipfs_gateway_url=self.IPFS_GATEWAY_URL,
            ipfs_pin=self.IPFS_PIN,
            session_ttl_seconds=self.SESSION_TTL_SECONDS,
            sweep_grace_seconds=self.SWEEP_GRACE_SECONDS,
            max_file_size_bytes=self.MAX_FILE_SIZE_BYTES,
        )

# Singleton instance
settings = Settings()
