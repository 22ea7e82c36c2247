from weaver.storage.metadata import MetadataStore, PatchOutcome, build_memory
from weaver.storage.objects import (
    LocalObjectStore,
    ObjectInfo,
    ObjectStore,
    S3ObjectStore,
    generate_storage_key,
    sanitize_filename,
)
from weaver.storage.sessions import (
    InMemorySessionCache,
    RedisSessionCache,
    SessionCache,
    SessionStatus,
    UploadSession,
)

__all__ = [
    "MetadataStore", "PatchOutcome", "build_memory",
    "ObjectStore", "ObjectInfo", "LocalObjectStore", "S3ObjectStore",
    "generate_storage_key", "sanitize_filename",
    "SessionCache", "SessionStatus", "UploadSession",
    "InMemorySessionCache", "RedisSessionCache",
]
