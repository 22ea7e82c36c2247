"""
Versioned schema migrations with an append-only `schema_migrations` ledger.

Every migration is safe to re-apply: DDL is guarded with IF NOT EXISTS /
checkfirst and the ledger row is upserted.
"""
import hashlib
from dataclasses import dataclass
from typing import List, Sequence, Tuple
from sqlalchemy import delete, inspect, select, text
from sqlalchemy.engine import Connection, Engine
from sqlmodel import SQLModel
from weaver.models.base import utcnow
from weaver.models.memory import Memory, MemoryFile
from weaver.models.migration import SchemaMigration
from weaver.logging import logger


@dataclass(frozen=True)
class Migration:
    version: str
    filename: str
    statements: Tuple[str, ...] = ()
    create_tables: bool = False

    @property
    def checksum(self) -> str:
        body = "\n".join((self.filename, *self.statements))
        return "sha256-" + hashlib.sha256(body.encode("utf-8")).hexdigest()

    def apply(self, connection: Connection) -> None:
        if self.create_tables:
            SQLModel.metadata.create_all(
                connection, tables=[Memory.__table__, MemoryFile.__table__], checkfirst=True
            )
        for statement in self.statements:
            connection.execute(text(statement))


MIGRATIONS: Tuple[Migration, ...] = (
    Migration("0001", "0001_initial_schema", create_tables=True),
    Migration(
        "0002",
        "0002_backup_cid_index",
        ("CREATE INDEX IF NOT EXISTS idx_files_backup_cid ON memory_files(backup_cid)",),
    ),
    Migration(
        "0003",
        "0003_unique_storage_key",
        ("CREATE UNIQUE INDEX IF NOT EXISTS idx_files_storage_key ON memory_files(storage_key)",),
    ),
)

_ledger = SchemaMigration.__table__


def applied_versions(engine: Engine) -> List[str]:
    if not inspect(engine).has_table(_ledger.name):
        return []
    with engine.connect() as conn:
        return list(conn.execute(select(_ledger.c.version).order_by(_ledger.c.version)).scalars())


def pending_migrations(engine: Engine, migrations: Sequence[Migration] = MIGRATIONS) -> List[Migration]:
    done = set(applied_versions(engine))
    return [m for m in migrations if m.version not in done]


def _record(connection: Connection, migration: Migration) -> None:
    connection.execute(delete(_ledger).where(_ledger.c.version == migration.version))
    connection.execute(
        _ledger.insert().values(
            version=migration.version,
            filename=migration.filename,
            checksum=migration.checksum,
            applied_at=utcnow(),
        )
    )


def apply_migrations(
    engine: Engine,
    migrations: Sequence[Migration] = MIGRATIONS,
    reapply: bool = False,
) -> List[str]:
    """Apply pending migrations in order, each in its own transaction."""
    with engine.begin() as conn:
        _ledger.create(conn, checkfirst=True)

    done = set(applied_versions(engine))
    applied = []
    for migration in migrations:
        if migration.version in done and not reapply:
            continue
        with engine.begin() as conn:
            migration.apply(conn)
            _record(conn, migration)
        logger.info(f"Applied migration {migration.filename}")
        applied.append(migration.version)
    return applied
