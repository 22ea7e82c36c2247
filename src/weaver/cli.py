import sys
import mimetypes
import typer
from pathlib import Path
from typing import List, Optional
from weaver.config import settings
from weaver.errors import WeaverError
from weaver.logging import configure_logging, logger, get_session_id

app = typer.Typer(no_args_is_help=True)

@app.callback()
def main():
    """
    Memory Weaver storage CLI.
    """
    configure_logging(settings.LOG_LEVEL, quiet=settings.LOG_QUIET_LOGGERS)

@app.command(name="doctor")
def doctor():
    """
    Check system configuration and environment health.
    """
    logger.info("Running doctor check...")

    print("\n🩺 Memory Weaver Doctor\n")

    # Check 1: Environment / Interpreter
    print(f"Python: {sys.version.split()[0]}")
    print(f"Prefix: {sys.prefix}")
    print(f"Session ID: {get_session_id() or '-'}")

    # Check 2: Configuration
    print("\n[Configuration]")
    print(f"DATABASE_URL:             {settings.DATABASE_URL}")
    print(f"OBJECT_STORE_BACKEND:     {settings.OBJECT_STORE_BACKEND}")
    print(f"SESSION_CACHE_BACKEND:    {settings.SESSION_CACHE_BACKEND}")
    print(f"BACKUP_ENABLED:           {settings.BACKUP_ENABLED}")
    print(f"IPFS_API_URL:             {settings.IPFS_API_URL}")

    # Mask secrets
    if settings.OBJECT_STORE_BACKEND == "s3":
        s3_status = "✅ Set" if settings.S3_ACCESS_KEY_ID and settings.S3_SECRET_ACCESS_KEY else "❌ Missing"
        print(f"S3 credentials:           {s3_status}")
    token_status = "✅ Set" if settings.DISCORD_BOT_TOKEN and settings.DISCORD_BOT_TOKEN.get_secret_value() else "❌ Missing"
    print(f"DISCORD_BOT_TOKEN:        {token_status}")

    # Check 3: Object store directory
    if settings.OBJECT_STORE_BACKEND == "local":
        data_dir = Path(settings.OBJECT_STORE_PATH)
        if data_dir.exists() and data_dir.is_dir():
            print(f"\n[Object Store]            ✅ Found: {data_dir.absolute()}")
        else:
            print(f"\n[Object Store]            ❌ Missing: {data_dir.absolute()} (created on first upload)")

    print("\nDoctor check complete.")


def _orchestrator():
    from weaver.bootstrap import build_orchestrator
    return build_orchestrator(settings)


def _fail(e: Exception) -> None:
    message = e.user_message if isinstance(e, WeaverError) else str(e)
    print(f"❌ Failed: {message}")
    raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# db
# ---------------------------------------------------------------------------
db_app = typer.Typer(help="Metadata store management commands.")
app.add_typer(db_app, name="db")

@db_app.command("init")
def init():
    """Apply pending schema migrations."""
    from weaver.bootstrap import build_engine
    from weaver.db import init_db
    try:
        applied = init_db(build_engine(settings))
        logger.info("Database initialized successfully.")
        print(f"✅ Database initialized ({len(applied)} migration(s) applied).")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        print(f"❌ Failed: {e}")
        raise typer.Exit(code=1)

@db_app.command("status")
def status():
    """Show applied and pending schema migrations."""
    from weaver.bootstrap import build_engine
    from weaver.migrations import applied_versions, pending_migrations
    engine = build_engine(settings)
    for version in applied_versions(engine):
        print(f"✅ {version}")
    pending = pending_migrations(engine)
    for migration in pending:
        print(f"⏳ {migration.filename}")
    if not pending:
        print("Schema is up to date.")


# ---------------------------------------------------------------------------
# remember (stand-in for the chat interaction)
# ---------------------------------------------------------------------------
@app.command("remember")
def remember(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    title: str = typer.Option(..., "--title", "-t"),
    description: str = typer.Option(..., "--description", "-d"),
    user: str = typer.Option(..., "--user", "-u", help="Owning user id"),
    guild: str = typer.Option(..., "--guild", "-g", help="Owning guild id"),
    category: str = typer.Option("Other", "--category", "-c"),
    privacy: str = typer.Option("Members Only", "--privacy", "-p"),
    tags: Optional[List[str]] = typer.Option(None, "--tag"),
):
    """Store a local file as a new memory."""
    from weaver.schemas import AttachmentPayload, RememberRequest

    data = path.read_bytes()
    request = RememberRequest(
        title=title,
        description=description,
        category=category,
        privacy=privacy,
        tags=tags or [],
        file=AttachmentPayload(
            name=path.name,
            size=len(data),
            content_type=mimetypes.guess_type(path.name)[0] or "",
            data=data,
        ),
    )

    orchestrator = _orchestrator()
    try:
        result = orchestrator.submit(request, user_id=user, guild_id=guild)
    except WeaverError as e:
        orchestrator.close(wait_for_backups=False)
        _fail(e)

    print(f"✅ {result.user_message()}")
    if result.backup_scheduled:
        print("⏳ Waiting for backup...")
    # The process exits after this command, so let the detached backup finish
    orchestrator.close(wait_for_backups=True)


# ---------------------------------------------------------------------------
# memories
# ---------------------------------------------------------------------------
memories_app = typer.Typer(help="Browse and manage stored memories.")
app.add_typer(memories_app, name="memories")

@memories_app.command("list")
def list_memories(
    owner: Optional[str] = typer.Option(None, "--owner"),
    guild: Optional[str] = typer.Option(None, "--guild"),
    requester: Optional[str] = typer.Option(None, "--as", help="Apply privacy rules for this viewer"),
    category: Optional[str] = typer.Option(None, "--category"),
    search: Optional[str] = typer.Option(None, "--search", "-s"),
    status: str = typer.Option("active", "--status"),
    limit: int = typer.Option(20, "--limit"),
):
    """List memories, newest first."""
    from weaver.bootstrap import build_user_directory
    from weaver.schemas import MemoryFilter, validated

    orchestrator = _orchestrator()
    directory = build_user_directory(settings)
    try:
        flt = validated(
            MemoryFilter,
            owner_id=owner,
            guild_id=guild,
            requester_id=requester,
            category=category,
            status=status,
            search_term=search,
            limit=limit,
        )
        results = orchestrator.search(flt)
    except WeaverError as e:
        _fail(e)
    finally:
        orchestrator.close(wait_for_backups=False)

    if not results:
        print("No memories found.")
        directory.close()
        return

    print(f"Found {len(results)} memories:")
    for i, m in enumerate(results, 1):
        author = directory.display_name(m.user_id)
        print(f"{i}. [{m.id}] {m.title} ({m.category.value}, {m.privacy_level.value}) by {author}")
    directory.close()

@memories_app.command("show")
def show(memory_id: str):
    """Show one memory and its files."""
    orchestrator = _orchestrator()
    try:
        m = orchestrator.get(memory_id)
    except WeaverError as e:
        _fail(e)
    finally:
        orchestrator.close(wait_for_backups=False)

    print(f"{m.title}  [{m.id}]")
    print(f"  {m.description}")
    print(f"  Category: {m.category.value} | Privacy: {m.privacy_level.value} | Status: {m.status.value}")
    if m.tags:
        print(f"  Tags: {', '.join(m.tags)}")
    for f in m.files:
        backup = f.backup_url or "not backed up"
        print(f"  - {f.original_filename} ({f.size_bytes} bytes, {f.processing_status.value}) {backup}")

@memories_app.command("delete")
def delete(memory_id: str, requester: str = typer.Option(..., "--as", help="Requesting user id")):
    """Soft-delete a memory you own."""
    orchestrator = _orchestrator()
    try:
        orchestrator.delete(memory_id, requester)
        print(f"✅ Memory {memory_id} deleted.")
    except WeaverError as e:
        _fail(e)
    finally:
        orchestrator.close(wait_for_backups=False)

@memories_app.command("archive")
def archive(memory_id: str, requester: str = typer.Option(..., "--as", help="Requesting user id")):
    """Archive a memory you own."""
    orchestrator = _orchestrator()
    try:
        orchestrator.archive(memory_id, requester)
        print(f"✅ Memory {memory_id} archived.")
    except WeaverError as e:
        _fail(e)
    finally:
        orchestrator.close(wait_for_backups=False)

@memories_app.command("purge")
def purge(memory_id: str, yes: bool = typer.Option(False, "--yes", help="Skip confirmation")):
    """Permanently remove a memory and its file rows."""
    if not yes:
        typer.confirm(f"Permanently remove {memory_id}?", abort=True)
    orchestrator = _orchestrator()
    try:
        keys = orchestrator.metadata.purge_memory(memory_id)
        print(f"✅ Memory {memory_id} purged; {len(keys)} object(s) left for the sweep.")
    except WeaverError as e:
        _fail(e)
    finally:
        orchestrator.close(wait_for_backups=False)


# ---------------------------------------------------------------------------
# stats / sweep / backup
# ---------------------------------------------------------------------------
@app.command("stats")
def stats(
    user: Optional[str] = typer.Option(None, "--user"),
    guild: Optional[str] = typer.Option(None, "--guild"),
):
    """Aggregate counts over active memories."""
    if not user and not guild:
        print("❌ Pass --user and/or --guild.")
        raise typer.Exit(code=1)
    orchestrator = _orchestrator()
    try:
        result = orchestrator.stats(user_id=user, guild_id=guild)
    finally:
        orchestrator.close(wait_for_backups=False)

    if result.user:
        u = result.user
        print(f"User {user}: {u.total_memories} memories, {u.total_files} files "
              f"(avg {u.avg_files_per_memory:.1f}), {u.public_memories} public, {u.private_memories} private")
    if result.guild:
        g = result.guild
        print(f"Guild {guild}: {g.total_memories} memories from {g.active_users} users, "
              f"{g.total_files} files, {g.public_memories} public")

@app.command("sweep")
def sweep(
    orphans: bool = typer.Option(True, "--orphans/--no-orphans"),
    backups: bool = typer.Option(True, "--backups/--no-backups"),
):
    """Delete orphaned objects and retry missing backups once."""
    from weaver.sweep import ReconciliationSweep

    orchestrator = _orchestrator()
    try:
        report = ReconciliationSweep(orchestrator).run(orphans=orphans, backups=backups)
        print(f"✅ Sweep complete: {report.summary()}")
    except WeaverError as e:
        logger.error(f"Sweep failed: {e}")
        _fail(e)
    finally:
        orchestrator.close(wait_for_backups=False)


backup_app = typer.Typer(help="Backup network commands.")
app.add_typer(backup_app, name="backup")

@backup_app.command("health")
def backup_health():
    """Check the IPFS node."""
    from weaver.backup.ipfs import IPFSBackupClient

    client = IPFSBackupClient.from_config(settings.storage_config())
    try:
        health = client.health_check()
    finally:
        client.close()

    if health["healthy"]:
        print(f"✅ {health['node']} is up (version {health['version']})")
    else:
        print(f"❌ {health['node']} unreachable: {health['error']}")
        raise typer.Exit(code=1)

if __name__ == "__main__":
    app()
