"""
Typed inputs and read models for the storage pipeline.

Drafts validate at construction; use `validated()` to get a
`weaver.errors.ValidationError` instead of pydantic's own error.
"""
import mimetypes
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar
import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator
from weaver.errors import ValidationError
from weaver.models.memory import (
    DESCRIPTION_MAX,
    DESCRIPTION_MIN,
    TITLE_MAX,
    TITLE_MIN,
    Category,
    Memory,
    MemoryFile,
    MemoryStatus,
    PrivacyLevel,
    ProcessingStatus,
)

BLOCKED_EXTENSIONS = frozenset({"exe", "bat", "cmd", "scr", "pif", "com", "vbs", "js", "jar"})
MAX_FILENAME_LENGTH = 255

M = TypeVar("M", bound=BaseModel)


def validated(model_cls: Type[M], **data: Any) -> M:
    """Construct model_cls, translating pydantic errors into ValidationError."""
    try:
        return model_cls(**data)
    except pydantic.ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or model_cls.__name__}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError("; ".join(errors), errors=errors) from e


def _coerce_enum(enum_cls, value):
    """Accept enum members, display values ("Members Only") or slugs ("members_only")."""
    if isinstance(value, enum_cls) or not isinstance(value, str):
        return value
    wanted = value.strip().lower().replace("_", " ")
    for member in enum_cls:
        if wanted in (member.value.lower(), member.name.lower().replace("_", " ")):
            return member
    return value


# ---------------------------------------------------------------------------
# Drafts (validated before any I/O)
# ---------------------------------------------------------------------------
class MemoryDraft(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    user_id: str = Field(min_length=1)
    guild_id: str = Field(min_length=1)
    title: str = Field(min_length=TITLE_MIN, max_length=TITLE_MAX)
    description: str = Field(min_length=DESCRIPTION_MIN, max_length=DESCRIPTION_MAX)
    category: Category = Category.OTHER
    privacy: PrivacyLevel = PrivacyLevel.MEMBERS_ONLY
    tags: Tuple[str, ...] = ()

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v):
        return _coerce_enum(Category, v)

    @field_validator("privacy", mode="before")
    @classmethod
    def _privacy(cls, v):
        return _coerce_enum(PrivacyLevel, v)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v):
        if v is None:
            return ()
        if isinstance(v, str):
            v = v.split(",")
        return tuple(sorted({str(t).strip() for t in v if str(t).strip()}))


class FileDraft(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    filename: str = Field(min_length=1, max_length=MAX_FILENAME_LENGTH)
    content_type: str = Field("", validate_default=True)
    size_bytes: int = Field(gt=0)

    @field_validator("filename")
    @classmethod
    def _not_executable(cls, v: str) -> str:
        ext = PurePath(v).suffix.lstrip(".").lower()
        if ext in BLOCKED_EXTENSIONS:
            raise ValueError("executable file types are not allowed")
        return v

    @field_validator("content_type")
    @classmethod
    def _default_content_type(cls, v: str, info) -> str:
        if v:
            return v
        guessed, _ = mimetypes.guess_type(info.data.get("filename", ""))
        return guessed or "application/octet-stream"

    @property
    def extension(self) -> str:
        return PurePath(self.filename).suffix.lstrip(".").lower()


class AttachmentPayload(BaseModel):
    name: str
    size: int
    content_type: str = ""
    data: bytes


class RememberRequest(BaseModel):
    """The single call the chat-interaction collaborator makes."""
    title: str
    description: str
    category: str = Category.OTHER.value
    privacy: str = PrivacyLevel.MEMBERS_ONLY.value
    tags: List[str] = Field(default_factory=list)
    file: AttachmentPayload

    def to_drafts(self, user_id: str, guild_id: str) -> Tuple[MemoryDraft, FileDraft, bytes]:
        meta = validated(
            MemoryDraft,
            user_id=user_id,
            guild_id=guild_id,
            title=self.title,
            description=self.description,
            category=self.category,
            privacy=self.privacy,
            tags=self.tags,
        )
        file_meta = validated(
            FileDraft,
            filename=self.file.name,
            content_type=self.file.content_type,
            size_bytes=self.file.size,
        )
        return meta, file_meta, self.file.data


# ---------------------------------------------------------------------------
# Read models exposed to the browsing collaborator
# ---------------------------------------------------------------------------
class FileRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    memory_id: str
    original_filename: str
    content_type: str
    size_bytes: int
    storage_key: Optional[str]
    backup_cid: Optional[str]
    backup_url: Optional[str]
    processing_status: ProcessingStatus
    error_message: Optional[str]
    uploaded_at: datetime
    processed_at: Optional[datetime]
    updated_at: datetime


class MemoryRecord(BaseModel):
    id: str
    user_id: str
    guild_id: str
    title: str
    description: str
    category: Category
    privacy_level: PrivacyLevel
    tags: List[str]
    status: MemoryStatus
    file_count: int
    created_at: datetime
    updated_at: datetime
    files: List[FileRecord] = Field(default_factory=list)

    @classmethod
    def from_row(cls, memory: Memory, files: Optional[List[MemoryFile]] = None) -> "MemoryRecord":
        rows = memory.files if files is None else files
        return cls(
            id=memory.id,
            user_id=memory.user_id,
            guild_id=memory.guild_id,
            title=memory.title,
            description=memory.description,
            category=memory.category,
            privacy_level=memory.privacy_level,
            tags=memory.get_tags(),
            status=memory.status,
            file_count=memory.file_count,
            created_at=memory.created_at,
            updated_at=memory.updated_at,
            files=[FileRecord.model_validate(f) for f in sorted(rows, key=lambda f: f.uploaded_at)],
        )


class MemoryFilter(BaseModel):
    owner_id: Optional[str] = None
    guild_id: Optional[str] = None
    # When set, privacy rules apply: Public always, Members Only for any
    # requester, Private only for the owner.
    requester_id: Optional[str] = None
    category: Optional[Category] = None
    privacy: Optional[PrivacyLevel] = None
    status: MemoryStatus = MemoryStatus.ACTIVE
    search_term: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v):
        return _coerce_enum(Category, v)

    @field_validator("privacy", mode="before")
    @classmethod
    def _privacy(cls, v):
        return _coerce_enum(PrivacyLevel, v)

    @field_validator("date_from", "date_to")
    @classmethod
    def _assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # Timestamps are stored in UTC; naive bounds are read as UTC
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class UserStats(BaseModel):
    total_memories: int = 0
    total_files: int = 0
    avg_files_per_memory: float = 0.0
    public_memories: int = 0
    private_memories: int = 0


class GuildStats(BaseModel):
    total_memories: int = 0
    active_users: int = 0
    total_files: int = 0
    public_memories: int = 0


class MemoryStats(BaseModel):
    user: Optional[UserStats] = None
    guild: Optional[GuildStats] = None


class CreateMemoryResult(BaseModel):
    memory: MemoryRecord
    session_id: str
    storage_key: str
    elapsed_seconds: float
    backup_scheduled: bool

    @property
    def file(self) -> FileRecord:
        return self.memory.files[0]

    @property
    def backed_up(self) -> bool:
        return bool(self.file.backup_cid)

    def user_message(self) -> str:
        # Only claim redundancy the metadata store can actually show
        where = "primary storage and the backup network" if self.backed_up else "primary storage"
        return f"Your memory \"{self.memory.title}\" was saved to {where}. ID: {self.memory.id}"

    def summary(self) -> Dict[str, Any]:
        return {
            "memory_id": self.memory.id,
            "session_id": self.session_id,
            "storage_key": self.storage_key,
            "file_count": self.memory.file_count,
            "backed_up": self.backed_up,
        }
