import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch
import pytest
from sqlalchemy.exc import SQLAlchemyError
from weaver.errors import (
    Forbidden,
    MetadataWriteFailed,
    StorageUnavailable,
    StorageWriteFailed,
    ValidationError,
)
from weaver.config import StorageConfig
from weaver.models.base import utcnow
from weaver.models.memory import Category, MemoryStatus, PrivacyLevel, ProcessingStatus
from weaver.orchestrator import StorageOrchestrator
from weaver.schemas import AttachmentPayload, FileDraft, MemoryDraft, RememberRequest
from weaver.storage.metadata import PatchOutcome
from weaver.storage.sessions import InMemorySessionCache, SessionStatus
from weaver.sweep import ReconciliationSweep


def make_request(data=b"hello world", name="note.txt", title="Vacation",
                 description="Summer at beach", size=None, **kwargs):
    return RememberRequest(
        title=title,
        description=description,
        file=AttachmentPayload(name=name, size=len(data) if size is None else size, data=data),
        **kwargs,
    )


def later(hours=2):
    return lambda: utcnow() + timedelta(hours=hours)


def test_scenario_a_create_returns_before_backup(orchestrator, ipfs_node):
    ipfs_node.gate = threading.Event()
    image = b"\x89PNG\r\n\x1a\n" + b"\x00" * (2 * 1024 * 1024 - 8)
    request = make_request(image, name="vacation.png", category="Gaming", privacy="Private")

    result = orchestrator.submit(request, user_id="user-a", guild_id="guild-1")

    assert result.memory.file_count == 1
    assert result.memory.category == Category.GAMING
    assert result.memory.privacy_level == PrivacyLevel.PRIVATE
    assert result.file.processing_status == ProcessingStatus.COMPLETED
    assert result.file.backup_cid is None
    assert result.backup_scheduled is True
    assert result.storage_key.startswith(f"memories/{result.session_id}/")
    assert result.storage_key.endswith(".png")
    assert "backup" not in result.user_message()

    stored = orchestrator.get(result.memory.id)
    assert stored.file_count == 1
    assert len(stored.files) == 1
    assert stored.files[0].processing_status == ProcessingStatus.COMPLETED
    assert stored.files[0].backup_cid is None
    assert orchestrator.objects.get(result.storage_key) == image

    # Release the backup and let it patch the row
    ipfs_node.gate.set()
    assert orchestrator.drain(timeout=5)

    stored = orchestrator.get(result.memory.id)
    assert stored.files[0].backup_cid == ipfs_node.cid
    assert stored.files[0].backup_url == f"https://ipfs.io/ipfs/{ipfs_node.cid}"
    assert stored.files[0].processing_status == ProcessingStatus.COMPLETED


def test_scenario_b_empty_file_rejected_before_io(orchestrator, objects, metadata):
    with pytest.raises(ValidationError):
        orchestrator.submit(make_request(b"", size=0), user_id="user-a", guild_id="guild-1")

    assert list(objects.list_objects()) == []
    assert metadata.list_memories() == []


def test_declared_size_mismatch_rejected(orchestrator, objects):
    meta = MemoryDraft(user_id="u", guild_id="g", title="Vacation", description="Summer at beach")
    file_meta = FileDraft(filename="a.txt", size_bytes=99)

    with pytest.raises(ValidationError) as exc:
        orchestrator.create_memory(meta, b"short", file_meta)
    assert "does not match" in str(exc.value)
    assert list(objects.list_objects()) == []


def test_oversized_file_rejected(metadata, objects):
    config = StorageConfig(max_file_size_bytes=10, backup_enabled=False)
    orch = StorageOrchestrator(config, metadata, objects, InMemorySessionCache())
    try:
        with pytest.raises(ValidationError):
            orch.submit(make_request(b"x" * 11), user_id="u", guild_id="g")
    finally:
        orch.close()


@pytest.mark.parametrize("length,ok", [(2, False), (3, True), (100, True), (101, False)])
def test_scenario_e_title_bounds(orchestrator, metadata, length, ok):
    request = make_request(title="t" * length)
    if ok:
        result = orchestrator.submit(request, user_id="u", guild_id="g")
        assert len(result.memory.title) == length
    else:
        with pytest.raises(ValidationError):
            orchestrator.submit(request, user_id="u", guild_id="g")
        assert metadata.list_memories() == []


def test_scenario_c_backup_timeout_then_single_retry(orchestrator, metadata, ipfs_node):
    ipfs_node.fail_adds = -1

    result = orchestrator.submit(make_request(), user_id="user-a", guild_id="guild-1")
    assert result.elapsed_seconds < orchestrator.config.response_budget_seconds
    assert orchestrator.drain(timeout=5)

    file = metadata.get_file(result.file.id)
    assert file.processing_status == ProcessingStatus.COMPLETED
    assert file.backup_cid is None
    assert file.error_message is None
    adds_after_upload = ipfs_node.count("/api/v0/add")
    assert adds_after_upload == 2

    sweep = ReconciliationSweep(orchestrator, clock=later())
    report = sweep.run(orphans=False)
    assert report.backups_abandoned == [result.file.id]

    file = metadata.get_file(result.file.id)
    assert file.processing_status == ProcessingStatus.COMPLETED
    assert file.error_message.startswith("backup abandoned")
    assert ipfs_node.count("/api/v0/add") == adds_after_upload + 2

    # Given up permanently
    report = sweep.run(orphans=False)
    assert report.backups_abandoned == []
    assert ipfs_node.count("/api/v0/add") == adds_after_upload + 2


def test_sweep_recovers_backup_when_network_returns(orchestrator, metadata, ipfs_node):
    ipfs_node.fail_adds = 2
    result = orchestrator.submit(make_request(), user_id="user-a", guild_id="guild-1")
    assert orchestrator.drain(timeout=5)
    assert metadata.get_file(result.file.id).backup_cid is None

    report = ReconciliationSweep(orchestrator, clock=later()).run(orphans=False)

    assert report.backups_applied == [result.file.id]
    assert metadata.get_file(result.file.id).backup_cid == ipfs_node.cid


def test_scenario_d_delete_by_other_user_forbidden(orchestrator):
    result = orchestrator.submit(make_request(), user_id="user-a", guild_id="guild-1")
    assert orchestrator.drain(timeout=5)
    before = orchestrator.get(result.memory.id)

    with pytest.raises(Forbidden):
        orchestrator.delete(result.memory.id, requester_id="user-b")

    after = orchestrator.get(result.memory.id)
    assert after.status == MemoryStatus.ACTIVE
    assert after.files == before.files


def test_storage_failure_saves_nothing(config, metadata):
    objects = MagicMock()
    objects.put.side_effect = StorageUnavailable("bucket unreachable")
    sessions = InMemorySessionCache()
    orch = StorageOrchestrator(config, metadata, objects, sessions)
    try:
        with pytest.raises(StorageWriteFailed) as exc:
            orch.submit(make_request(), user_id="user-a", guild_id="guild-1")
    finally:
        orch.close()

    assert "Nothing was saved" in exc.value.user_message
    assert isinstance(exc.value.cause, StorageUnavailable)
    assert len(sessions) == 0
    assert metadata.list_memories() == []


def test_metadata_failure_leaves_orphan_for_sweep(orchestrator, objects, metadata, caplog):
    with patch.object(metadata, "create_memory_with_files", side_effect=SQLAlchemyError("database is locked")):
        with pytest.raises(MetadataWriteFailed) as exc:
            orchestrator.submit(make_request(), user_id="user-a", guild_id="guild-1", session_id="upl_orphan")

    key = exc.value.storage_key
    assert objects.exists(key)
    assert orchestrator.sessions.get("upl_orphan") is None
    assert "ORPHANED BLOB" in caplog.text

    # Young blobs survive, old ones are reclaimed
    assert ReconciliationSweep(orchestrator).run(backups=False).orphans_deleted == []
    report = ReconciliationSweep(orchestrator, clock=later()).run(backups=False)
    assert report.orphans_deleted == [key]
    assert not objects.exists(key)


def test_session_tracks_commit(orchestrator):
    result = orchestrator.submit(make_request(), user_id="user-a", guild_id="guild-1")
    session = orchestrator.sessions.get(result.session_id)

    assert session.status == SessionStatus.COMMITTED
    assert session.memory_id == result.memory.id
    assert session.storage_key == result.storage_key


def test_backup_patch_after_delete_is_noop(orchestrator, metadata, ipfs_node):
    ipfs_node.gate = threading.Event()
    result = orchestrator.submit(make_request(), user_id="user-a", guild_id="guild-1")
    orchestrator.delete(result.memory.id, requester_id="user-a")

    ipfs_node.gate.set()
    assert orchestrator.drain(timeout=5)

    deleted = metadata.get_memory(result.memory.id, include_deleted=True)
    assert deleted.status == MemoryStatus.DELETED
    assert deleted.files[0].backup_cid is None


def test_backup_disabled_skips_network(metadata, objects, backup, ipfs_node):
    config = StorageConfig(backup_enabled=False)
    orch = StorageOrchestrator(config, metadata, objects, InMemorySessionCache(), backup=backup)
    try:
        result = orch.submit(make_request(), user_id="user-a", guild_id="guild-1")
    finally:
        orch.close()

    assert result.backup_scheduled is False
    assert ipfs_node.requests == []


def test_backup_crash_is_logged_not_raised(orchestrator, metadata, caplog):
    with patch.object(metadata, "patch_file_backup", side_effect=RuntimeError("boom")):
        result = orchestrator.submit(make_request(), user_id="user-a", guild_id="guild-1")
        assert orchestrator.drain(timeout=5)

    assert result.memory.id
    assert "Detached backup task crashed" in caplog.text


def test_reconcile_backup_is_idempotent(orchestrator, ipfs_node):
    result = orchestrator.submit(make_request(), user_id="user-a", guild_id="guild-1")
    assert orchestrator.drain(timeout=5)
    adds = ipfs_node.count("/api/v0/add")

    assert orchestrator.reconcile_backup(result.file.id) == PatchOutcome.UNCHANGED
    assert ipfs_node.count("/api/v0/add") == adds


def test_user_message_mentions_backup_only_when_present(orchestrator):
    result = orchestrator.submit(make_request(), user_id="user-a", guild_id="guild-1")
    assert "backup network" not in result.user_message()

    backed = result.model_copy(deep=True)
    backed.memory.files[0].backup_cid = "bafkreitestcid"
    assert "backup network" in backed.user_message()


def test_session_is_started_while_bytes_are_written(orchestrator, objects):
    seen = []
    real_put = objects.put

    def recording_put(key, data, **kwargs):
        seen.append(orchestrator.sessions.get("upl_started").status)
        return real_put(key, data, **kwargs)

    with patch.object(objects, "put", side_effect=recording_put):
        orchestrator.submit(make_request(), user_id="user-a", guild_id="guild-1", session_id="upl_started")

    assert seen == [SessionStatus.STARTED]
    assert orchestrator.sessions.get("upl_started").status == SessionStatus.COMMITTED


def test_backup_queue_limit_leaves_overflow_to_sweep(metadata, objects, backup, ipfs_node):
    config = StorageConfig(backup_queue_limit=1, backup_retries=2, backup_backoff_seconds=0.0)
    orch = StorageOrchestrator(config, metadata, objects, InMemorySessionCache(), backup=backup)
    ipfs_node.gate = threading.Event()
    try:
        first = orch.submit(make_request(b"first"), user_id="user-a", guild_id="guild-1")
        second = orch.submit(make_request(b"second"), user_id="user-a", guild_id="guild-1")

        assert first.backup_scheduled is True
        assert second.backup_scheduled is False

        ipfs_node.gate.set()
        assert orch.drain(timeout=5)
        assert ipfs_node.count("/api/v0/add") == 1
        assert orch.get(second.memory.id).files[0].backup_cid is None

        # Queue is free again once the first backup finishes
        third = orch.submit(make_request(b"third"), user_id="user-a", guild_id="guild-1")
        assert third.backup_scheduled is True
        assert orch.drain(timeout=5)

        report = ReconciliationSweep(orch, clock=later()).run(orphans=False)
        assert report.backups_applied == [second.file.id]
    finally:
        ipfs_node.gate.set()
        orch.close()
