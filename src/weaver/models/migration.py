from datetime import datetime
from sqlmodel import Field, SQLModel
from weaver.models.base import utcnow


class SchemaMigration(SQLModel, table=True):
    """Append-only ledger of applied schema versions."""
    __tablename__ = "schema_migrations"

    version: str = Field(primary_key=True)
    filename: str
    checksum: str
    applied_at: datetime = Field(default_factory=utcnow, nullable=False)
