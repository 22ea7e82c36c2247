import logging
import os
import pytest
from unittest.mock import patch
from typer.testing import CliRunner
from weaver.config import Settings, StorageConfig
from weaver.cli import app

runner = CliRunner()

def test_settings_load():
    """Verify settings load from the environment with sane defaults."""
    os.environ["BACKUP_RETRIES"] = "5"
    try:
        settings = Settings()
        assert settings.BACKUP_RETRIES == 5
        assert settings.OBJECT_STORE_BACKEND == "local"
        assert settings.MAX_FILE_SIZE_BYTES == 50 * 1024 * 1024
        config = settings.storage_config()
        assert isinstance(config, StorageConfig)
        assert config.backup_retries == 5
    finally:
        del os.environ["BACKUP_RETRIES"]

def test_storage_config_is_frozen():
    config = StorageConfig()
    with pytest.raises(Exception):
        config.backup_retries = 10

def test_cli_doctor():
    """Verify the doctor command runs without error."""
    with patch("weaver.cli.settings") as mock_settings:
        mock_settings.LOG_LEVEL = "INFO"
        mock_settings.LOG_QUIET_LOGGERS = ["httpx"]
        mock_settings.DISCORD_BOT_TOKEN.get_secret_value.return_value = "token"
        mock_settings.OBJECT_STORE_BACKEND = "local"
        mock_settings.OBJECT_STORE_PATH = "data/objects"

        result = runner.invoke(app, ["doctor"])
        assert result.exit_code == 0
        assert "Memory Weaver Doctor" in result.stdout
        assert "DISCORD_BOT_TOKEN:        ✅ Set" in result.stdout


@pytest.fixture(name="cli_settings")
def cli_settings_fixture(tmp_path):
    test_settings = Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'weaver.db'}",
        OBJECT_STORE_PATH=str(tmp_path / "objects"),
        BACKUP_ENABLED=False,
        DISCORD_BOT_TOKEN=None,
    )
    with patch("weaver.cli.settings", test_settings):
        yield test_settings

def test_cli_end_to_end(cli_settings, tmp_path):
    photo = tmp_path / "beach.png"
    photo.write_bytes(b"\x89PNG fake image")

    result = runner.invoke(app, ["db", "init"])
    assert result.exit_code == 0, result.stdout
    assert "3 migration(s) applied" in result.stdout

    result = runner.invoke(app, ["db", "status"])
    assert "Schema is up to date." in result.stdout

    result = runner.invoke(app, [
        "remember", str(photo),
        "--title", "Beach day",
        "--description", "Sunset at the beach",
        "--user", "user-a",
        "--guild", "guild-1",
        "--privacy", "public",
        "--tag", "summer",
    ])
    assert result.exit_code == 0, result.stdout
    assert "saved to primary storage" in result.stdout
    memory_id = result.stdout.split("ID: ")[1].split()[0]

    result = runner.invoke(app, ["memories", "list", "--guild", "guild-1"])
    assert "Beach day" in result.stdout
    assert "Unknown User" in result.stdout

    result = runner.invoke(app, ["memories", "show", memory_id])
    assert "beach.png" in result.stdout
    assert "not backed up" in result.stdout

    result = runner.invoke(app, ["stats", "--user", "user-a"])
    assert "1 memories, 1 files" in result.stdout

    result = runner.invoke(app, ["memories", "delete", memory_id, "--as", "user-b"])
    assert result.exit_code == 1
    assert "You can only change memories you created." in result.stdout

    result = runner.invoke(app, ["memories", "delete", memory_id, "--as", "user-a"])
    assert result.exit_code == 0

    result = runner.invoke(app, ["sweep", "--no-backups"])
    assert result.exit_code == 0
    assert "0 orphan(s) deleted" in result.stdout

def test_cli_remember_rejects_short_title(cli_settings, tmp_path):
    photo = tmp_path / "beach.png"
    photo.write_bytes(b"data")
    runner.invoke(app, ["db", "init"])

    result = runner.invoke(app, [
        "remember", str(photo), "-t", "no", "-d", "Sunset at the beach", "-u", "u", "-g", "g",
    ])
    assert result.exit_code == 1
    assert "not valid" in result.stdout

def test_cli_backup_health_unreachable(cli_settings):
    with patch("weaver.backup.ipfs.IPFSBackupClient.health_check", return_value={
        "node": "http://127.0.0.1:5001", "healthy": False, "version": None, "error": "refused",
    }):
        result = runner.invoke(app, ["backup", "health"])
    assert result.exit_code == 1
    assert "unreachable" in result.stdout

def test_cli_applies_log_settings(tmp_path):
    test_settings = Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'weaver.db'}",
        LOG_LEVEL="DEBUG",
        LOG_QUIET_LOGGERS=["weaver.test.chatty"],
    )
    with patch("weaver.cli.settings", test_settings), \
         patch("weaver.cli.configure_logging") as mock_configure:
        result = runner.invoke(app, ["doctor"])

    assert result.exit_code == 0, result.stdout
    mock_configure.assert_called_once_with("DEBUG", quiet=["weaver.test.chatty"])

def test_configure_logging_quiets_named_loggers():
    from weaver.logging import NOISY_LOGGERS, configure_logging
    try:
        configure_logging("DEBUG", quiet=["weaver.test.chatty"])
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("weaver.test.chatty").level == logging.WARNING
    finally:
        configure_logging()
    assert logging.getLogger().level == logging.INFO
    assert all(logging.getLogger(name).level == logging.WARNING for name in NOISY_LOGGERS)

def test_quiet_loggers_default_and_env():
    assert Settings().LOG_QUIET_LOGGERS == ["httpx", "httpcore", "botocore", "boto3", "urllib3"]
    os.environ["LOG_QUIET_LOGGERS"] = '["sqlalchemy.engine"]'
    try:
        assert Settings().LOG_QUIET_LOGGERS == ["sqlalchemy.engine"]
    finally:
        del os.environ["LOG_QUIET_LOGGERS"]
