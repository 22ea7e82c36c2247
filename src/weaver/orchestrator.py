"""
Storage orchestrator: sequences the primary object store, the metadata
store and the backup network for one upload.

    validate -> put bytes -> insert memory+file -> respond
                                               \\-> (detached) backup -> patch file

Bytes are always written before metadata, and metadata always commits
before a backup patch is attempted. A metadata failure after a successful
byte write leaves an orphaned blob for the reconciliation sweep. Backup
failures never reach the caller.
"""
import contextvars
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from typing import List, Optional, Set
from sqlalchemy.exc import SQLAlchemyError
from weaver.backup.ipfs import IPFSBackupClient
from weaver.config import StorageConfig
from weaver.errors import (
    BackupSoftFailure,
    ConstraintViolation,
    MetadataWriteFailed,
    ObjectStoreError,
    StorageWriteFailed,
    ValidationError,
)
from weaver.logging import bind_session_id, logger, new_session_id
from weaver.models.base import utcnow
from weaver.models.memory import MemoryFile, ProcessingStatus
from weaver.schemas import (
    CreateMemoryResult,
    FileDraft,
    MemoryDraft,
    MemoryFilter,
    MemoryRecord,
    MemoryStats,
    RememberRequest,
)
from weaver.storage.metadata import MetadataStore, PatchOutcome, build_memory
from weaver.storage.objects import ObjectStore, compute_sha256, generate_storage_key, sanitize_filename
from weaver.storage.sessions import SessionCache, SessionStatus, UploadSession


class StorageOrchestrator:
    def __init__(
        self,
        config: StorageConfig,
        metadata: MetadataStore,
        objects: ObjectStore,
        sessions: SessionCache,
        backup: Optional[IPFSBackupClient] = None,
        executor: Optional[Executor] = None,
    ):
        self.config = config
        self.metadata = metadata
        self.objects = objects
        self.sessions = sessions
        self.backup = backup
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.backup_workers, thread_name_prefix="weaver-backup"
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    # -----------------------------------------------------------------------
    # Create
    # -----------------------------------------------------------------------
    def submit(self, request: RememberRequest, user_id: str, guild_id: str,
               session_id: Optional[str] = None) -> CreateMemoryResult:
        """Entry point for the chat-interaction collaborator."""
        meta, file_meta, data = request.to_drafts(user_id, guild_id)
        return self.create_memory(meta, data, file_meta, session_id=session_id)

    def _validate(self, file_bytes: bytes, file_meta: FileDraft) -> None:
        errors = []
        if not file_bytes:
            errors.append("File cannot be empty")
        elif len(file_bytes) != file_meta.size_bytes:
            errors.append(f"Declared size {file_meta.size_bytes} does not match {len(file_bytes)} bytes received")
        if len(file_bytes) > self.config.max_file_size_bytes:
            errors.append(f"File exceeds the {self.config.max_file_size_bytes} byte limit")
        if errors:
            raise ValidationError("; ".join(errors), errors=errors)

    def _remember_session(self, session: UploadSession) -> None:
        # Sessions only correlate logs; a cache outage must not fail the upload
        try:
            self.sessions.put(session)
        except Exception as e:
            logger.warning(f"Could not cache upload session {session.session_id}: {e}")

    def _forget_session(self, session_id: str) -> None:
        try:
            self.sessions.delete(session_id)
        except Exception as e:
            logger.warning(f"Could not drop upload session {session_id}: {e}")

    def create_memory(
        self,
        meta: MemoryDraft,
        file_bytes: bytes,
        file_meta: FileDraft,
        session_id: Optional[str] = None,
    ) -> CreateMemoryResult:
        """
        Store one file and create its memory.

        Returns once bytes and metadata are durable; the backup push runs
        detached. Not idempotent across caller retries: each attempt should
        carry a fresh session id.

        Raises:
            ValidationError: bad input, nothing touched.
            StorageWriteFailed: byte write failed, nothing saved.
            MetadataWriteFailed: bytes stored but no metadata (orphaned blob).
        """
        session_id = session_id or new_session_id()
        with bind_session_id(session_id):
            started = time.monotonic()
            self._validate(file_bytes, file_meta)

            upload = UploadSession(
                session_id=session_id,
                user_id=meta.user_id,
                guild_id=meta.guild_id,
                ttl_seconds=self.config.session_ttl_seconds,
            )
            self._remember_session(upload)

            # 1. Primary bytes
            storage_key = generate_storage_key(session_id, file_meta.filename)
            try:
                self.objects.put(
                    storage_key,
                    file_bytes,
                    content_type=file_meta.content_type,
                    metadata={
                        "original-name": sanitize_filename(file_meta.filename),
                        "user-id": meta.user_id,
                        "sha256": compute_sha256(file_bytes),
                    },
                )
            except ObjectStoreError as e:
                logger.error(f"Primary write failed for {storage_key}: {e}")
                self._forget_session(session_id)
                raise StorageWriteFailed(f"Could not store {file_meta.filename}: {e}", cause=e) from e

            upload.status = SessionStatus.STORED
            upload.storage_key = storage_key
            self._remember_session(upload)

            # 2. Metadata, memory and first file in one transaction
            memory = build_memory(meta)
            file_row = MemoryFile(
                memory_id=memory.id,
                original_filename=file_meta.filename,
                content_type=file_meta.content_type,
                size_bytes=len(file_bytes),
                storage_key=storage_key,
                processing_status=ProcessingStatus.COMPLETED,
                processed_at=utcnow(),
            )
            memory.file_count = 1
            file_id = file_row.id
            # Snapshot before commit expires the instances
            record = MemoryRecord.from_row(memory, files=[file_row])
            try:
                self.metadata.create_memory_with_files(memory, [file_row])
            except (ConstraintViolation, SQLAlchemyError) as e:
                logger.error(
                    f"ORPHANED BLOB: metadata insert failed after storing {storage_key}; "
                    f"the reconciliation sweep will reclaim it. Cause: {e}"
                )
                self._forget_session(session_id)
                raise MetadataWriteFailed(f"Metadata insert failed: {e}", storage_key=storage_key) from e

            upload.status = SessionStatus.COMMITTED
            upload.memory_id = record.id
            self._remember_session(upload)

            elapsed = time.monotonic() - started
            if elapsed > self.config.response_budget_seconds:
                logger.warning(
                    f"Memory {record.id} committed in {elapsed:.2f}s, over the "
                    f"{self.config.response_budget_seconds:.1f}s response budget"
                )
            else:
                logger.info(f"Memory {record.id} committed in {elapsed:.2f}s")

            # 3. Backup, off the response path
            scheduled = self._schedule_backup(file_id, file_bytes, file_meta)

        return CreateMemoryResult(
            memory=record,
            session_id=session_id,
            storage_key=storage_key,
            elapsed_seconds=elapsed,
            backup_scheduled=scheduled,
        )

    # -----------------------------------------------------------------------
    # Backup
    # -----------------------------------------------------------------------
    def _schedule_backup(self, file_id: str, data: bytes, file_meta: FileDraft) -> bool:
        if not self.config.backup_enabled or self.backup is None:
            return False

        # Copy the context so the worker logs under the same session id
        ctx = contextvars.copy_context()
        with self._lock:
            # Finished futures can linger here until their done callback runs
            in_flight = sum(1 for f in self._pending if not f.done())
            if in_flight >= self.config.backup_queue_limit:
                # Left for the sweep, which retries Completed files without a backup
                logger.warning(
                    f"Backup not scheduled for file {file_id}: {in_flight} backups already in flight"
                )
                return False
            try:
                future = self._executor.submit(
                    ctx.run, self._backup_task, file_id, data, file_meta.filename, file_meta.content_type
                )
            except RuntimeError as e:
                logger.warning(f"Backup not scheduled for file {file_id}: {e}")
                return False
            self._pending.add(future)
        future.add_done_callback(self._backup_done)
        return True

    def _push_and_patch(self, file_id: str, data: bytes, name: str, content_type: str) -> PatchOutcome:
        result = self.backup.backup(data, name, content_type)
        return self.metadata.patch_file_backup(file_id, result.content_id, result.gateway_url)

    def _backup_task(self, file_id: str, data: bytes, name: str, content_type: str) -> Optional[PatchOutcome]:
        try:
            return self._push_and_patch(file_id, data, name, content_type)
        except BackupSoftFailure as e:
            # Terminal, not an error: the file stays Completed without backup fields
            logger.warning(f"Backup skipped for file {file_id}: {e}")
            return None
        except Exception:
            # Nothing awaits this task, so its failures end here
            logger.exception(f"Detached backup task crashed for file {file_id}")
            return None

    def _backup_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def reconcile_backup(self, file_id: str) -> PatchOutcome:
        """
        Synchronously push an already-stored file to the backup network.

        Raises:
            NotFound: unknown file.
            BackupSoftFailure: backup disabled, bytes unreadable, or retries exhausted.
        """
        file = self.metadata.get_file(file_id)
        if file.backup_cid:
            return PatchOutcome.UNCHANGED
        if self.backup is None:
            raise BackupSoftFailure("Backup network is not configured")
        try:
            data = self.objects.get(file.storage_key)
        except ObjectStoreError as e:
            raise BackupSoftFailure(f"Could not read {file.storage_key}: {e}") from e
        return self._push_and_patch(file.id, data, file.original_filename, file.content_type)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for detached backups. Returns True when none are left running."""
        with self._lock:
            pending: List[Future] = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self, wait_for_backups: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_backups)
        if self.backup is not None:
            self.backup.close()

    # -----------------------------------------------------------------------
    # Browsing collaborator surface
    # -----------------------------------------------------------------------
    def search(self, flt: Optional[MemoryFilter] = None) -> List[MemoryRecord]:
        return self.metadata.list_memories(flt)

    def get(self, memory_id: str) -> MemoryRecord:
        return self.metadata.get_memory(memory_id)

    def delete(self, memory_id: str, requester_id: str) -> None:
        self.metadata.delete_memory(memory_id, requester_id)

    def archive(self, memory_id: str, requester_id: str) -> None:
        self.metadata.archive_memory(memory_id, requester_id)

    def stats(self, user_id: Optional[str] = None, guild_id: Optional[str] = None) -> MemoryStats:
        return self.metadata.get_stats(user_id=user_id, guild_id=guild_id)
