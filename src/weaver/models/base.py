from datetime import datetime, timezone
from enum import Enum
from typing import Type
from sqlalchemy import Column, Enum as SAEnum
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def enum_column(enum_cls: Type[Enum], name: str, default: Enum) -> Column:
    """Column storing an enum's *values* with a schema-level CHECK constraint."""
    return Column(
        SAEnum(
            enum_cls,
            name=name,
            values_callable=lambda members: [m.value for m in members],
            create_constraint=True,
            validate_strings=True,
        ),
        nullable=False,
        default=default,
    )


class UpdatedAtMixin(SQLModel):
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column_kwargs={"onupdate": utcnow},
        nullable=False,
    )


class TimestampMixin(UpdatedAtMixin):
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        index=True,
    )
