"""
Best-effort display-name lookup for chat-platform user ids.

Read-only and decoupled from storage: any failure yields the fallback
name, and nothing in the upload path depends on it.
"""
import threading
from typing import Dict, Optional
import httpx
from weaver.logging import logger

DISCORD_API_URL = "https://discord.com/api/v10"
UNKNOWN_USER = "Unknown User"


class UserDirectory:
    def __init__(
        self,
        bot_token: Optional[str] = None,
        base_url: str = DISCORD_API_URL,
        timeout_seconds: float = 3.0,
        fallback: str = UNKNOWN_USER,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.fallback = fallback
        self._enabled = bool(bot_token)
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()
        headers = {"Authorization": f"Bot {bot_token}"} if bot_token else {}
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def display_name(self, user_id: str) -> str:
        if not self._enabled:
            return self.fallback

        with self._lock:
            cached = self._cache.get(user_id)
        if cached:
            return cached

        try:
            response = self._client.get(f"/users/{user_id}")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Display name lookup failed for {user_id}: {e}")
            return self.fallback

        name = data.get("global_name") or data.get("username")
        if not name:
            return self.fallback
        with self._lock:
            self._cache[user_id] = name
        return name
