"""
Relational metadata store for memories and their files.

The only component with transactional discipline: a memory and its first
file rows commit together or not at all, and every backup patch is a single
conditional UPDATE.
"""
import json
from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence, Set
from sqlalchemy import and_, case, func, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, StatementError
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select
from weaver.errors import ConstraintViolation, Forbidden, NotFound
from weaver.models.base import utcnow
from weaver.models.memory import (
    Memory,
    MemoryFile,
    MemoryStatus,
    PrivacyLevel,
    ProcessingStatus,
)
from weaver.schemas import (
    FileRecord,
    GuildStats,
    MemoryDraft,
    MemoryFilter,
    MemoryRecord,
    MemoryStats,
    UserStats,
)
from weaver.logging import logger


class PatchOutcome(str, Enum):
    APPLIED = "APPLIED"
    UNCHANGED = "UNCHANGED"
    SKIPPED = "SKIPPED"  # file gone or memory deleted


# Allowed forward moves; completed and failed are terminal
FILE_TRANSITIONS = {
    ProcessingStatus.PENDING: {ProcessingStatus.PROCESSING, ProcessingStatus.COMPLETED, ProcessingStatus.FAILED},
    ProcessingStatus.PROCESSING: {ProcessingStatus.COMPLETED, ProcessingStatus.FAILED},
    ProcessingStatus.COMPLETED: set(),
    ProcessingStatus.FAILED: set(),
}


def _like_pattern(term: str) -> str:
    """Substring LIKE pattern with the wildcards in term escaped."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def build_memory(draft: MemoryDraft) -> Memory:
    memory = Memory(
        user_id=draft.user_id,
        guild_id=draft.guild_id,
        title=draft.title,
        description=draft.description,
        category=draft.category,
        privacy_level=draft.privacy,
    )
    memory.set_tags(draft.tags)
    return memory


class MetadataStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------
    def create_memory_with_files(self, memory: Memory, files: Sequence[MemoryFile]) -> str:
        """Insert a memory and its files in one transaction. Returns the memory id."""
        if not files:
            raise ConstraintViolation("A memory needs at least one file")

        memory.file_count = len(files)
        with Session(self.engine) as session:
            session.add(memory)
            for f in files:
                f.memory_id = memory.id
                session.add(f)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConstraintViolation(f"Memory rejected by schema: {e.orig}") from e
            except StatementError as e:
                session.rollback()
                # Unknown enum values fail while binding parameters
                if isinstance(e.orig, LookupError):
                    raise ConstraintViolation(f"Memory rejected: {e.orig}") from e
                raise
            memory_id = memory.id

        logger.info(f"Created memory {memory_id} with {len(files)} file(s)")
        return memory_id

    def patch_file_backup(self, file_id: str, backup_cid: str, backup_url: str) -> PatchOutcome:
        """
        Record a backup location on a file.

        Applies only while the file exists and its memory is not deleted;
        otherwise it is a silent no-op. Repeating the same call changes nothing.
        """
        live_memories = select(Memory.id).where(Memory.status != MemoryStatus.DELETED)
        stmt = (
            update(MemoryFile)
            .where(
                MemoryFile.id == file_id,
                MemoryFile.memory_id.in_(live_memories),
                or_(
                    MemoryFile.backup_cid.is_distinct_from(backup_cid),
                    MemoryFile.backup_url.is_distinct_from(backup_url),
                ),
            )
            .values(backup_cid=backup_cid, backup_url=backup_url, updated_at=utcnow())
        )
        with self.engine.begin() as conn:
            applied = conn.execute(stmt).rowcount

        if applied:
            logger.info(f"Recorded backup {backup_cid} for file {file_id}")
            return PatchOutcome.APPLIED

        with Session(self.engine) as session:
            row = session.exec(
                select(MemoryFile, Memory.status)
                .join(Memory, MemoryFile.memory_id == Memory.id)
                .where(MemoryFile.id == file_id)
            ).first()
        if row is None or row[1] == MemoryStatus.DELETED:
            logger.info(f"Skipped backup patch for file {file_id}: file or memory no longer live")
            return PatchOutcome.SKIPPED
        return PatchOutcome.UNCHANGED

    def update_file_status(self, file_id: str, status: ProcessingStatus,
                           error: Optional[str] = None) -> FileRecord:
        """
        Move a file along pending -> processing -> completed | failed.

        Completed and failed are terminal; staying put is allowed and only
        refreshes the error text.

        Raises:
            NotFound: unknown file.
            ConstraintViolation: backward move, or completed without a storage key.
        """
        status = ProcessingStatus(status)
        with Session(self.engine) as session:
            row = session.get(MemoryFile, file_id)
            if not row:
                raise NotFound(f"File {file_id} not found")
            current = row.processing_status
            if status != current and status not in FILE_TRANSITIONS[current]:
                raise ConstraintViolation(
                    f"File {file_id} cannot move from {current.value} to {status.value}"
                )
            row.processing_status = status
            if status == ProcessingStatus.COMPLETED and row.processed_at is None:
                row.processed_at = utcnow()
            if error is not None:
                row.error_message = error[:500]
            session.add(row)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConstraintViolation(f"File {file_id} rejected by schema: {e.orig}") from e
            session.refresh(row)
            record = FileRecord.model_validate(row)

        logger.info(f"File {file_id} is now {status.value}")
        return record

    def mark_backup_abandoned(self, file_id: str, reason: str) -> bool:
        """Record that backup was given up. Status stays Completed."""
        stmt = (
            update(MemoryFile)
            .where(MemoryFile.id == file_id, MemoryFile.backup_cid.is_(None))
            .values(error_message=reason[:500], updated_at=utcnow())
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount > 0

    def _owned_memory(self, session: Session, memory_id: str, requester_id: str) -> Memory:
        memory = session.get(Memory, memory_id)
        if not memory or memory.status == MemoryStatus.DELETED:
            raise NotFound(f"Memory {memory_id} not found")
        if memory.user_id != requester_id:
            raise Forbidden(f"User {requester_id} does not own memory {memory_id}")
        return memory

    def delete_memory(self, memory_id: str, requester_id: str) -> None:
        """Soft-delete: status -> deleted. Rows stay until purged."""
        with Session(self.engine) as session:
            memory = self._owned_memory(session, memory_id, requester_id)
            memory.status = MemoryStatus.DELETED
            session.add(memory)
            session.commit()
        logger.info(f"Memory {memory_id} deleted by {requester_id}")

    def archive_memory(self, memory_id: str, requester_id: str) -> None:
        with Session(self.engine) as session:
            memory = self._owned_memory(session, memory_id, requester_id)
            if memory.status != MemoryStatus.ARCHIVED:
                memory.status = MemoryStatus.ARCHIVED
                session.add(memory)
                session.commit()
        logger.info(f"Memory {memory_id} archived by {requester_id}")

    def purge_memory(self, memory_id: str) -> List[str]:
        """
        Hard-remove a memory and (via cascade) its files.

        Returns the storage keys released; the orphan sweep reclaims the bytes.
        """
        with Session(self.engine) as session:
            memory = session.get(Memory, memory_id)
            if not memory:
                raise NotFound(f"Memory {memory_id} not found")
            keys = [f.storage_key for f in memory.files if f.storage_key]
            session.delete(memory)
            session.commit()
        logger.info(f"Purged memory {memory_id} ({len(keys)} object(s) released)")
        return keys

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------
    def get_memory(self, memory_id: str, include_deleted: bool = False) -> MemoryRecord:
        with Session(self.engine) as session:
            memory = session.exec(
                select(Memory).where(Memory.id == memory_id).options(selectinload(Memory.files))
            ).first()
            if not memory or (memory.status == MemoryStatus.DELETED and not include_deleted):
                raise NotFound(f"Memory {memory_id} not found")
            return MemoryRecord.from_row(memory)

    def get_file(self, file_id: str) -> FileRecord:
        with Session(self.engine) as session:
            row = session.get(MemoryFile, file_id)
            if not row:
                raise NotFound(f"File {file_id} not found")
            return FileRecord.model_validate(row)

    def list_memories(self, flt: Optional[MemoryFilter] = None) -> List[MemoryRecord]:
        flt = flt or MemoryFilter()
        clauses = [Memory.status == flt.status]

        if flt.owner_id:
            clauses.append(Memory.user_id == flt.owner_id)
        if flt.guild_id:
            clauses.append(Memory.guild_id == flt.guild_id)
        if flt.requester_id:
            clauses.append(or_(
                Memory.privacy_level == PrivacyLevel.PUBLIC,
                Memory.privacy_level == PrivacyLevel.MEMBERS_ONLY,
                and_(Memory.privacy_level == PrivacyLevel.PRIVATE, Memory.user_id == flt.requester_id),
            ))
        if flt.category:
            clauses.append(Memory.category == flt.category)
        if flt.privacy:
            clauses.append(Memory.privacy_level == flt.privacy)
        if flt.search_term:
            pattern = _like_pattern(flt.search_term)
            # Tags are stored as a JSON array, so match the term as JSON encodes it
            tag_pattern = _like_pattern(json.dumps(flt.search_term)[1:-1])
            clauses.append(or_(
                Memory.title.like(pattern, escape="\\"),
                Memory.description.like(pattern, escape="\\"),
                Memory.tags_json.like(tag_pattern, escape="\\"),
            ))
        if flt.date_from:
            clauses.append(Memory.created_at >= flt.date_from)
        if flt.date_to:
            clauses.append(Memory.created_at <= flt.date_to)

        stmt = (
            select(Memory)
            .where(*clauses)
            .options(selectinload(Memory.files))
            .order_by(Memory.created_at.desc())
            .offset(flt.offset)
            .limit(flt.limit)
        )
        with Session(self.engine) as session:
            return [MemoryRecord.from_row(m) for m in session.exec(stmt).all()]

    def get_stats(self, user_id: Optional[str] = None, guild_id: Optional[str] = None) -> MemoryStats:
        """Aggregate counts over active memories only."""
        stats = MemoryStats()
        active = Memory.status == MemoryStatus.ACTIVE
        public = func.count(case((Memory.privacy_level == PrivacyLevel.PUBLIC, 1)))

        with Session(self.engine) as session:
            if user_id:
                total, files, avg, pub, private = session.exec(
                    select(
                        func.count(Memory.id),
                        func.coalesce(func.sum(Memory.file_count), 0),
                        func.avg(Memory.file_count),
                        public,
                        func.count(case((Memory.privacy_level == PrivacyLevel.PRIVATE, 1))),
                    ).where(active, Memory.user_id == user_id)
                ).one()
                stats.user = UserStats(
                    total_memories=total,
                    total_files=files,
                    avg_files_per_memory=float(avg or 0.0),
                    public_memories=pub,
                    private_memories=private,
                )
            if guild_id:
                total, users, files, pub = session.exec(
                    select(
                        func.count(Memory.id),
                        func.count(func.distinct(Memory.user_id)),
                        func.coalesce(func.sum(Memory.file_count), 0),
                        public,
                    ).where(active, Memory.guild_id == guild_id)
                ).one()
                stats.guild = GuildStats(
                    total_memories=total,
                    active_users=users,
                    total_files=files,
                    public_memories=pub,
                )
        return stats

    # -----------------------------------------------------------------------
    # Reconciliation support
    # -----------------------------------------------------------------------
    def referenced_storage_keys(self) -> Set[str]:
        with Session(self.engine) as session:
            keys = session.exec(select(MemoryFile.storage_key).where(MemoryFile.storage_key.is_not(None))).all()
        return set(keys)

    def files_missing_backup(self, uploaded_before: datetime, limit: int = 100) -> List[FileRecord]:
        """Completed files with no backup that no sweep has given up on yet."""
        stmt = (
            select(MemoryFile)
            .join(Memory, MemoryFile.memory_id == Memory.id)
            .where(
                MemoryFile.processing_status == ProcessingStatus.COMPLETED,
                MemoryFile.backup_cid.is_(None),
                MemoryFile.error_message.is_(None),
                MemoryFile.uploaded_at <= uploaded_before,
                Memory.status != MemoryStatus.DELETED,
            )
            .order_by(MemoryFile.uploaded_at)
            .limit(limit)
        )
        with Session(self.engine) as session:
            return [FileRecord.model_validate(f) for f in session.exec(stmt).all()]
