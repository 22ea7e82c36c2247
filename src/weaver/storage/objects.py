"""
Primary object store: durable, whole-object byte storage keyed by caller-chosen keys.

Two backends share one interface:
- LocalObjectStore  files under a root directory (development, tests)
- S3ObjectStore     any S3-compatible bucket (AWS S3, Cloudflare R2, MinIO)
"""
import errno
import hashlib
import os
import re
import secrets
import string
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Optional, Protocol
import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from weaver.errors import QuotaExceeded, StorageUnavailable
from weaver.logging import logger

KEY_PREFIX = "memories"
_ALPHABET = string.ascii_lowercase + string.digits


def sanitize_filename(name: str) -> str:
    """Sanitize filename to be safe for object keys and filesystems."""
    # Remove non-alphanumeric (except ._-)
    s = re.sub(r'[^a-zA-Z0-9._-]', '_', name)
    return s.strip('_')


def compute_sha256(data: bytes) -> str:
    """Compute SHA256 hash of bytes."""
    return hashlib.sha256(data).hexdigest()


def generate_storage_key(session_id: str, filename: str, now_ms: Optional[int] = None) -> str:
    """
    Build a never-reused key: memories/{session}/{epoch_ms}_{random9}.{ext}

    The session id makes duplicates from caller retries distinguishable; the
    timestamp and random suffix keep keys unique within one session.
    """
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    ext = Path(sanitize_filename(filename)).suffix.lower()
    return f"{KEY_PREFIX}/{sanitize_filename(session_id)}/{now_ms}_{suffix}{ext}"


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    last_modified: datetime


class ObjectStore(Protocol):
    def put(self, key: str, data: bytes, content_type: Optional[str] = None,
            metadata: Optional[Dict[str, str]] = None) -> None: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def exists(self, key: str) -> bool: ...

    def list_objects(self, prefix: str = KEY_PREFIX) -> Iterator[ObjectInfo]: ...


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------
class LocalObjectStore:
    """Stores each key as a file below `root`; writes are atomic renames."""

    def __init__(self, root: Path, quota_bytes: Optional[int] = None):
        self.root = Path(root)
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        parts = key.split("/")
        if any(p in ("", ".", "..") for p in parts):
            raise StorageUnavailable(f"Invalid object key: {key!r}")
        return self.root.joinpath(*parts)

    def _used_bytes(self) -> int:
        return sum(info.size for info in self.list_objects(""))

    def put(self, key, data, content_type=None, metadata=None) -> None:
        if self.quota_bytes is not None and self._used_bytes() + len(data) > self.quota_bytes:
            raise QuotaExceeded(f"Local store quota of {self.quota_bytes} bytes exceeded")

        path = self._path(key)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            if e.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
                raise QuotaExceeded(f"No space left for {key}: {e}") from e
            raise StorageUnavailable(f"Failed to write {key}: {e}") from e

        logger.info(f"Stored object {key} ({len(data)} bytes)")

    def get(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as e:
            raise StorageUnavailable(f"Failed to read {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Failed to delete {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def list_objects(self, prefix: str = KEY_PREFIX) -> Iterator[ObjectInfo]:
        if not self.root.exists():
            return
        for path in sorted(self.root.rglob("*")):
            if not path.is_file() or (path.name.startswith(".") and path.name.endswith(".part")):
                continue
            key = path.relative_to(self.root).as_posix()
            if not key.startswith(prefix):
                continue
            stat = path.stat()
            yield ObjectInfo(
                key=key,
                size=stat.st_size,
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            )


# ---------------------------------------------------------------------------
# S3-compatible bucket
# ---------------------------------------------------------------------------
QUOTA_ERROR_CODES = frozenset({
    "QuotaExceeded",
    "StorageQuotaExceeded",
    "ServiceQuotaExceededException",
    "EntityTooLarge",
})


class S3ObjectStore:
    """Object store backed by an S3-compatible bucket.

    Args:
        bucket:           Bucket name.
        client:           Pre-built boto3 S3 client (tests). Built lazily otherwise.
        endpoint_url:     Custom endpoint, e.g. an R2 account endpoint.
        region_name:      Region passed to boto3 ("auto" for R2).
        timeout_seconds:  Connect/read timeout for a single request.
    """

    def __init__(
        self,
        bucket: str,
        client=None,
        endpoint_url: Optional[str] = None,
        region_name: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
    ):
        self.bucket = bucket
        self._client = client
        self._endpoint_url = endpoint_url
        self._region = region_name
        self._access_key = aws_access_key_id
        self._secret_key = aws_secret_access_key
        self._timeout = timeout_seconds

    def _get_client(self):
        if self._client is None:
            kwargs = {
                "config": Config(
                    connect_timeout=self._timeout,
                    read_timeout=self._timeout,
                    retries={"max_attempts": 2, "mode": "standard"},
                ),
            }
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            if self._region:
                kwargs["region_name"] = self._region
            if self._access_key and self._secret_key:
                kwargs["aws_access_key_id"] = self._access_key
                kwargs["aws_secret_access_key"] = self._secret_key
            self._client = boto3.client("s3", **kwargs)
        return self._client

    def _translate(self, action: str, key: str, e: Exception) -> Exception:
        if isinstance(e, ClientError):
            code = e.response.get("Error", {}).get("Code", "")
            if code in QUOTA_ERROR_CODES:
                return QuotaExceeded(f"{action} {key} rejected: {code}")
        return StorageUnavailable(f"{action} {key} failed: {e}")

    def put(self, key, data, content_type=None, metadata=None) -> None:
        kwargs = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        if metadata:
            kwargs["Metadata"] = metadata
        try:
            self._get_client().put_object(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise self._translate("put", key, e) from e
        logger.info(f"Stored object s3://{self.bucket}/{key} ({len(data)} bytes)")

    def get(self, key: str) -> bytes:
        try:
            response = self._get_client().get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise self._translate("get", key, e) from e

    def delete(self, key: str) -> None:
        try:
            self._get_client().delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._translate("delete", key, e) from e

    def exists(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise self._translate("head", key, e) from e
        except BotoCoreError as e:
            raise self._translate("head", key, e) from e

    def list_objects(self, prefix: str = KEY_PREFIX) -> Iterator[ObjectInfo]:
        paginator = self._get_client().get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    yield ObjectInfo(key=obj["Key"], size=obj["Size"], last_modified=obj["LastModified"])
        except (ClientError, BotoCoreError) as e:
            raise self._translate("list", prefix, e) from e
