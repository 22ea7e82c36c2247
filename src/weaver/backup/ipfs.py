"""
Content-addressed backup client for an IPFS node's HTTP API.

`backup()` adds the bytes, asks the node to pin them, and returns the CID
plus a gateway URL. Each attempt has its own timeout; attempts are retried
with exponential backoff and, once exhausted, end in BackupSoftFailure.
A failed pin never fails the backup: an unpinned but retrievable object
still counts.
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional
import httpx
from weaver.config import StorageConfig
from weaver.errors import BackupSoftFailure
from weaver.logging import logger

USER_AGENT = "memory-weaver/1.0"


@dataclass(frozen=True)
class BackupResult:
    content_id: str
    gateway_url: str
    size: Optional[int] = None
    pinned: bool = False
    attempts: int = 1


def gateway_url_for(cid: str, gateway: str) -> str:
    gateway = gateway if gateway.endswith("/") else gateway + "/"
    return f"{gateway}{cid}"


class IPFSBackupClient:
    def __init__(
        self,
        api_url: str,
        gateway_url: str = "https://ipfs.io/ipfs/",
        timeout_seconds: float = 60.0,
        retries: int = 3,
        backoff_seconds: float = 1.0,
        pin: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url
        self.retries = max(1, retries)
        self.backoff_seconds = backoff_seconds
        self.pin = pin
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=self.api_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: StorageConfig, **kwargs) -> "IPFSBackupClient":
        return cls(
            api_url=config.ipfs_api_url,
            gateway_url=config.ipfs_gateway_url,
            timeout_seconds=config.backup_timeout_seconds,
            retries=config.backup_retries,
            backoff_seconds=config.backup_backoff_seconds,
            pin=config.ipfs_pin,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def _add(self, data: bytes, display_name: str, content_type: str) -> Dict:
        params = {"hash": "sha2-256", "pin": "true" if self.pin else "false"}
        response = self._client.post(
            "/api/v0/add",
            params=params,
            files={"file": (display_name, data, content_type)},
        )
        response.raise_for_status()
        payload = response.json()
        if not payload.get("Hash"):
            raise ValueError(f"IPFS add response without Hash: {payload}")
        return payload

    def pin_cid(self, cid: str) -> bool:
        if not self.pin:
            return False
        try:
            response = self._client.post("/api/v0/pin/add", params={"arg": cid, "recursive": "true"})
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Pin failed for {cid}, keeping unpinned copy: {e}")
            return False

    def backup(self, data: bytes, display_name: str, content_type: str = "application/octet-stream") -> BackupResult:
        """Push bytes to the backup network. Raises BackupSoftFailure after the last attempt."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            try:
                started = time.monotonic()
                payload = self._add(data, display_name, content_type)
                cid = payload["Hash"]
                pinned = self.pin_cid(cid)
                logger.info(
                    f"Backed up {display_name} as {cid} "
                    f"(attempt {attempt}, {time.monotonic() - started:.2f}s, pinned={pinned})"
                )
                return BackupResult(
                    content_id=cid,
                    gateway_url=gateway_url_for(cid, self.gateway_url),
                    size=int(payload["Size"]) if payload.get("Size") else None,
                    pinned=pinned,
                    attempts=attempt,
                )
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(f"Backup attempt {attempt}/{self.retries} for {display_name} failed: {e}")
                if attempt < self.retries:
                    self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        raise BackupSoftFailure(
            f"Backup of {display_name} abandoned after {self.retries} attempt(s): {last_error}",
            attempts=self.retries,
        )

    def health_check(self) -> Dict:
        """Query the node version. Never raises."""
        try:
            response = self._client.post("/api/v0/version")
            response.raise_for_status()
            version = response.json().get("Version")
            return {"node": self.api_url, "healthy": True, "version": version, "error": None}
        except (httpx.HTTPError, ValueError) as e:
            return {"node": self.api_url, "healthy": False, "version": None, "error": str(e)}
