"""
Wire concrete collaborators from Settings.

This is the only place that reads `settings`; everything it builds takes
explicit configuration.
"""
from typing import Optional
from sqlalchemy.engine import Engine
from weaver.backup.ipfs import IPFSBackupClient
from weaver.config import Settings, settings as default_settings
from weaver.db import make_engine
from weaver.enrichment import UserDirectory
from weaver.orchestrator import StorageOrchestrator
from weaver.storage.metadata import MetadataStore
from weaver.storage.objects import LocalObjectStore, ObjectStore, S3ObjectStore
from weaver.storage.sessions import InMemorySessionCache, RedisSessionCache, SessionCache


def _secret(value) -> Optional[str]:
    return value.get_secret_value() if value else None


def build_engine(cfg: Settings = default_settings) -> Engine:
    return make_engine(cfg.DATABASE_URL, timeout=cfg.WRITE_TIMEOUT_SECONDS)


def build_object_store(cfg: Settings = default_settings) -> ObjectStore:
    if cfg.OBJECT_STORE_BACKEND == "s3":
        return S3ObjectStore(
            bucket=cfg.S3_BUCKET,
            endpoint_url=cfg.S3_ENDPOINT_URL,
            region_name=cfg.S3_REGION,
            aws_access_key_id=_secret(cfg.S3_ACCESS_KEY_ID),
            aws_secret_access_key=_secret(cfg.S3_SECRET_ACCESS_KEY),
            timeout_seconds=cfg.WRITE_TIMEOUT_SECONDS,
        )
    return LocalObjectStore(cfg.OBJECT_STORE_PATH)


def build_session_cache(cfg: Settings = default_settings) -> SessionCache:
    if cfg.SESSION_CACHE_BACKEND == "redis":
        return RedisSessionCache.from_url(cfg.REDIS_URL)
    return InMemorySessionCache()


def build_backup_client(cfg: Settings = default_settings) -> Optional[IPFSBackupClient]:
    if not cfg.BACKUP_ENABLED:
        return None
    return IPFSBackupClient.from_config(cfg.storage_config())


def build_orchestrator(cfg: Settings = default_settings, engine: Optional[Engine] = None) -> StorageOrchestrator:
    return StorageOrchestrator(
        config=cfg.storage_config(),
        metadata=MetadataStore(engine or build_engine(cfg)),
        objects=build_object_store(cfg),
        sessions=build_session_cache(cfg),
        backup=build_backup_client(cfg),
    )


def build_user_directory(cfg: Settings = default_settings) -> UserDirectory:
    return UserDirectory(bot_token=_secret(cfg.DISCORD_BOT_TOKEN))
