"""
Metadata-store entities:
- Memory      (user-authored record, always owns at least one file)
- MemoryFile  (one stored artifact, cascade-deleted with its memory)

Bounds and enumerations are enforced by CHECK constraints so that rows
written outside this package are held to the same rules.
"""
import json
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional
from sqlalchemy import CheckConstraint
from sqlmodel import Field, Relationship
from weaver.models.base import TimestampMixin, UpdatedAtMixin, enum_column, utcnow

TITLE_MIN, TITLE_MAX = 3, 100
DESCRIPTION_MIN, DESCRIPTION_MAX = 10, 1000


class Category(str, Enum):
    PERSONAL = "Personal"
    SERVER_EVENTS = "Server Events"
    RESOURCES = "Resources"
    GAMING = "Gaming"
    OTHER = "Other"


class PrivacyLevel(str, Enum):
    PUBLIC = "Public"
    MEMBERS_ONLY = "Members Only"
    PRIVATE = "Private"


class MemoryStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def new_memory_id() -> str:
    return f"mem_{uuid.uuid4().hex}"


def new_file_id() -> str:
    return f"file_{uuid.uuid4().hex}"


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------
class Memory(TimestampMixin, table=True):
    __tablename__ = "memories"
    __table_args__ = (
        CheckConstraint(
            f"length(title) >= {TITLE_MIN} AND length(title) <= {TITLE_MAX}",
            name="ck_memories_title_length",
        ),
        CheckConstraint(
            f"length(description) >= {DESCRIPTION_MIN} AND length(description) <= {DESCRIPTION_MAX}",
            name="ck_memories_description_length",
        ),
        CheckConstraint("file_count >= 1", name="ck_memories_file_count"),
    )

    id: str = Field(default_factory=new_memory_id, primary_key=True)
    user_id: str = Field(index=True)
    guild_id: str = Field(index=True)

    title: str
    description: str
    category: Category = Field(
        default=Category.OTHER,
        sa_column=enum_column(Category, "memory_category", Category.OTHER),
    )
    privacy_level: PrivacyLevel = Field(
        default=PrivacyLevel.MEMBERS_ONLY,
        sa_column=enum_column(PrivacyLevel, "memory_privacy", PrivacyLevel.MEMBERS_ONLY),
    )
    status: MemoryStatus = Field(
        default=MemoryStatus.ACTIVE,
        sa_column=enum_column(MemoryStatus, "memory_status", MemoryStatus.ACTIVE),
    )

    # Unordered tag set stored as a sorted JSON array, e.g. '["beach", "summer"]'
    tags_json: str = Field(default="[]")
    file_count: int = Field(default=1)

    files: List["MemoryFile"] = Relationship(
        back_populates="memory",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "passive_deletes": True},
    )

    def set_tags(self, tags) -> None:
        self.tags_json = json.dumps(sorted({t for t in tags}))

    def get_tags(self) -> List[str]:
        return json.loads(self.tags_json or "[]")


# ---------------------------------------------------------------------------
# MemoryFile
# ---------------------------------------------------------------------------
class MemoryFile(UpdatedAtMixin, table=True):
    __tablename__ = "memory_files"
    __table_args__ = (
        CheckConstraint("size_bytes > 0", name="ck_memory_files_size"),
        CheckConstraint(
            "processing_status != 'completed' OR storage_key IS NOT NULL",
            name="ck_memory_files_completed_has_key",
        ),
    )

    id: str = Field(default_factory=new_file_id, primary_key=True)
    memory_id: str = Field(foreign_key="memories.id", ondelete="CASCADE", index=True)

    original_filename: str
    content_type: str
    size_bytes: int
    storage_key: Optional[str] = Field(default=None, description="Primary object store key")

    # Backup network fields stay NULL until (and unless) a backup succeeds
    backup_cid: Optional[str] = Field(default=None)
    backup_url: Optional[str] = Field(default=None)

    processing_status: ProcessingStatus = Field(
        default=ProcessingStatus.PENDING,
        sa_column=enum_column(ProcessingStatus, "file_processing_status", ProcessingStatus.PENDING),
    )
    error_message: Optional[str] = Field(default=None)

    uploaded_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)
    processed_at: Optional[datetime] = Field(default=None)

    memory: Optional[Memory] = Relationship(back_populates="files")
