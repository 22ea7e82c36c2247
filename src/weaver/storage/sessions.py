"""
Upload session cache.

Sessions correlate the log lines and retries of a single upload attempt.
They expire on their own and are never consulted to decide whether a
memory exists; the metadata store is the only source of truth.
"""
import threading
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Tuple
import redis
from pydantic import BaseModel, Field
from weaver.models.base import utcnow


class SessionStatus(str, Enum):
    STARTED = "started"
    STORED = "stored"
    COMMITTED = "committed"


class UploadSession(BaseModel):
    session_id: str
    user_id: str
    guild_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    ttl_seconds: int = 24 * 60 * 60
    status: SessionStatus = SessionStatus.STARTED
    storage_key: Optional[str] = None
    memory_id: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.ttl_seconds)


class SessionCache(Protocol):
    def put(self, session: UploadSession) -> None: ...

    def get(self, session_id: str) -> Optional[UploadSession]: ...

    def delete(self, session_id: str) -> None: ...


class InMemorySessionCache:
    """Process-local TTL map. Expired entries are evicted lazily on access."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, str]] = {}

    def put(self, session: UploadSession) -> None:
        with self._lock:
            # Status updates keep the original deadline
            now = self._clock()
            existing = self._entries.get(session.session_id)
            deadline = existing[0] if existing and existing[0] > now else now + session.ttl_seconds
            self._entries[session.session_id] = (deadline, session.model_dump_json())

    def get(self, session_id: str) -> Optional[UploadSession]:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            deadline, payload = entry
            if self._clock() >= deadline:
                del self._entries[session_id]
                return None
        return UploadSession.model_validate_json(payload)

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (deadline, _) in self._entries.items() if now >= deadline]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisSessionCache:
    """Shared cache for multi-process deployments; Redis owns expiry."""

    def __init__(self, client: redis.Redis, prefix: str = "upload_session:"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisSessionCache":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    def put(self, session: UploadSession) -> None:
        key = self._key(session.session_id)
        payload = session.model_dump_json()
        if not self._client.set(key, payload, ex=session.ttl_seconds, nx=True):
            self._client.set(key, payload, xx=True, keepttl=True)

    def get(self, session_id: str) -> Optional[UploadSession]:
        payload = self._client.get(self._key(session_id))
        if payload is None:
            return None
        return UploadSession.model_validate_json(payload)

    def delete(self, session_id: str) -> None:
        self._client.delete(self._key(session_id))
