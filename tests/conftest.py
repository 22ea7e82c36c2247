import threading
import httpx
import pytest
from weaver.backup.ipfs import IPFSBackupClient
from weaver.config import StorageConfig
from weaver.db import init_db, make_engine
from weaver.models.memory import MemoryFile, ProcessingStatus
from weaver.orchestrator import StorageOrchestrator
from weaver.schemas import MemoryDraft
from weaver.storage.metadata import MetadataStore, build_memory
from weaver.storage.objects import LocalObjectStore
from weaver.storage.sessions import InMemorySessionCache


class FakeIPFSNode:
    """httpx.MockTransport handler imitating the add / pin / version endpoints."""

    def __init__(self, cid: str = "bafkreitestcid"):
        self.cid = cid
        self.requests = []
        self.fail_adds = 0  # number of adds to time out; negative means all
        self.fail_pin = False
        self.gate = None  # threading.Event holding adds until set
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        path = request.url.path
        if path == "/api/v0/add":
            if self.gate is not None:
                self.gate.wait(5)
            with self._lock:
                failing = self.fail_adds != 0
                if self.fail_adds > 0:
                    self.fail_adds -= 1
            if failing:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"Name": "upload", "Hash": self.cid, "Size": "42"})
        if path == "/api/v0/pin/add":
            if self.fail_pin:
                return httpx.Response(500, json={"Message": "pin failed"})
            return httpx.Response(200, json={"Pins": [self.cid]})
        if path == "/api/v0/version":
            return httpx.Response(200, json={"Version": "0.29.0"})
        return httpx.Response(404)

    def count(self, path: str) -> int:
        with self._lock:
            return sum(1 for r in self.requests if r.url.path == path)


@pytest.fixture(name="engine")
def engine_fixture():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="metadata")
def metadata_fixture(engine):
    return MetadataStore(engine)


@pytest.fixture(name="objects")
def objects_fixture(tmp_path):
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture(name="config")
def config_fixture():
    return StorageConfig(backup_retries=2, backup_backoff_seconds=0.0, sweep_grace_seconds=3600)


@pytest.fixture(name="ipfs_node")
def ipfs_node_fixture():
    return FakeIPFSNode()


@pytest.fixture(name="backup")
def backup_fixture(ipfs_node):
    client = IPFSBackupClient(
        "http://ipfs.test",
        retries=2,
        backoff_seconds=0.0,
        transport=httpx.MockTransport(ipfs_node),
        sleep=lambda s: None,
    )
    yield client
    client.close()


@pytest.fixture(name="orchestrator")
def orchestrator_fixture(config, metadata, objects, backup, ipfs_node):
    orch = StorageOrchestrator(config, metadata, objects, InMemorySessionCache(), backup=backup)
    yield orch
    if ipfs_node.gate is not None:
        ipfs_node.gate.set()
    orch.close(wait_for_backups=True)


@pytest.fixture(name="make_memory")
def make_memory_fixture(metadata):
    """Insert a memory with completed files straight through the metadata store."""
    def _make(user_id="user-a", guild_id="guild-1", title="Beach day", files=1, **fields):
        draft = MemoryDraft(
            user_id=user_id,
            guild_id=guild_id,
            title=title,
            description=fields.pop("description", "A day at the beach"),
            **fields,
        )
        memory = build_memory(draft)
        rows = [
            MemoryFile(
                memory_id=memory.id,
                original_filename=f"photo{i}.jpg",
                content_type="image/jpeg",
                size_bytes=1024,
                storage_key=f"memories/upl_test/{memory.id}_{i}.jpg",
                processing_status=ProcessingStatus.COMPLETED,
            )
            for i in range(files)
        ]
        metadata.create_memory_with_files(memory, rows)
        return metadata.get_memory(memory.id)
    return _make
