"""
tests/test_backup_service.py — Snapshots, Retention, Restore & Scheduler
=========================================================================
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import Mock

import pytest
from conftest import TEST_PASSWORD, make_friends, make_user

from clipportal.errors import InvalidInput, NotFound, Unauthenticated
from clipportal.services.backup_service import (
    META_SUFFIX,
    BackupManager,
    BackupScheduler,
    mask_email,
    parse_cron,
)


@pytest.fixture
def backups(services):
    return services.backups


# ===========================================================================
# Create / list / retention
# ===========================================================================
class TestCreate:
    def test_writes_archive_and_metadata(self, services, backups):
        make_user(services, "alice")
        meta = backups.create_backup("manual")
        archive = backups.backup_dir / meta["filename"]
        assert archive.exists()
        assert (backups.backup_dir / (meta["filename"] + META_SUFFIX)).exists()
        assert meta["label"] == "manual"
        assert meta["stats"]["users"] == 1
        assert meta["size_bytes"] == archive.stat().st_size

        data = json.loads(archive.read_text())
        assert [u["username"] for u in data["users"]["users"]] == ["alice"]
        assert "timestamp" in data

    def test_sessions_are_not_archived(self, services, backups):
        make_user(services, "alice")
        services.auth.login("alice", TEST_PASSWORD)
        data = json.loads((backups.backup_dir / backups.create_backup()["filename"]).read_text())
        assert "sessions" not in data
        assert "user_sessions" not in data

    def test_list_is_newest_first(self, backups):
        first = backups.create_backup("one")
        second = backups.create_backup("two")
        listed = backups.list_backups()
        assert [b["filename"] for b in listed] == [second["filename"], first["filename"]]
        assert listed[0]["label"] == "two"

    def test_retention_keeps_newest(self, db_engine, tmp_path, cipher):
        """With retain=1 only the latest of two archives survives."""
        manager = BackupManager(db_engine, tmp_path / "keep-one", retain=1, cipher=cipher)
        manager.create_backup("first")
        latest = manager.create_backup("second")
        listed = manager.list_backups()
        assert [b["filename"] for b in listed] == [latest["filename"]]
        assert len(list((tmp_path / "keep-one").glob(f"*{META_SUFFIX}"))) == 1

    def test_list_without_directory(self, db_engine, tmp_path):
        assert BackupManager(db_engine, tmp_path / "nowhere").list_backups() == []


# ===========================================================================
# Restore
# ===========================================================================
class TestRestore:
    def test_brings_back_deleted_data(self, services, backups):
        admin = make_user(services, "admin", admin=True)
        bob = make_user(services, "bob")
        make_friends(services, admin, bob)
        services.messages.send_message(admin["id"], bob["id"], "hi")
        archive = backups.create_backup()["filename"]

        services.users.delete(bob["id"], actor_id=admin["id"])
        assert services.users.get_by_username("bob") is None

        result = backups.restore(archive)

        assert result["restored_from"] == archive
        assert result["stats"]["users"] == 2
        restored = services.users.get_by_email("bob@example.com")
        assert restored["id"] == bob["id"]
        assert services.friends.are_friends(admin["id"], bob["id"])
        assert len(services.messages.conversation(admin["id"], bob["id"])) == 1

    def test_leaves_pre_restore_archive(self, services, backups):
        make_user(services, "alice")
        archive = backups.create_backup()["filename"]
        make_user(services, "late")
        result = backups.restore(archive)

        pre = [b for b in backups.list_backups() if b["label"] == "pre-restore"]
        assert [b["filename"] for b in pre] == [result["pre_restore"]]
        assert pre[0]["metadata"]["stats"]["users"] == 2
        assert services.users.get_by_username("late") is None

    def test_revokes_sessions(self, services, backups):
        make_user(services, "alice")
        token = services.auth.login("alice", TEST_PASSWORD).token
        backups.restore(backups.create_backup()["filename"])
        with pytest.raises(Unauthenticated):
            services.auth.validate_session(token)

    def test_is_audited(self, services, backups):
        make_user(services, "alice")
        archive = backups.create_backup()["filename"]
        backups.restore(archive)
        entry = services.audit.entries()[0]
        assert entry["action"] == "BACKUP_RESTORED"
        assert entry["details"]["filename"] == archive

    def test_missing_archive(self, backups):
        with pytest.raises(NotFound, match="Backup file not found"):
            backups.restore("clipportal-backup-2020-01-01T00-00-00-000000Z.json")

    @pytest.mark.parametrize("name", ["../secrets.json", "notes.txt", "clipportal-backup-x.json" + META_SUFFIX])
    def test_rejects_foreign_names(self, backups, name):
        with pytest.raises(InvalidInput):
            backups.restore(name)

    def test_corrupt_archive_leaves_data_alone(self, services, backups):
        make_user(services, "alice")
        backups.backup_dir.mkdir(parents=True, exist_ok=True)
        (backups.backup_dir / "clipportal-backup-broken.json").write_text("{not json")
        with pytest.raises(InvalidInput, match="unreadable"):
            backups.restore("clipportal-backup-broken.json")
        assert services.users.get_by_username("alice") is not None
        assert all(b["label"] != "pre-restore" for b in backups.list_backups())

    def test_archive_without_users(self, backups):
        backups.backup_dir.mkdir(parents=True, exist_ok=True)
        (backups.backup_dir / "clipportal-backup-empty.json").write_text(json.dumps({"clips": {}}))
        with pytest.raises(InvalidInput, match="users"):
            backups.restore("clipportal-backup-empty.json")


# ===========================================================================
# Export
# ===========================================================================
class TestExport:
    def test_masks_emails_and_drops_hashes(self, services, backups):
        make_user(services, "alice")
        result = backups.export_users()
        user = result["data"]["users"][0]
        assert user["email"] == "a***@example.com"
        assert "password_hash" not in user
        assert "audit" not in result["data"]["stats"]
        assert result["data"]["version"] == "1.0"
        on_disk = json.loads(Path(result["path"]).read_text(encoding="utf-8"))
        assert on_disk["users"][0]["username"] == "alice"

    @pytest.mark.parametrize(
        ("email", "masked"),
        [("alice@example.com", "a***@example.com"), ("x@y.io", "x***@y.io"), ("broken", "broken"), (None, None)],
    )
    def test_mask_email(self, email, masked):
        assert mask_email(email) == masked


# ===========================================================================
# Scheduler
# ===========================================================================
class TestParseCron:
    @pytest.mark.parametrize("expr", ["", "0 2 * *", "0 2 * * * *", "abc 2 * * *", "61 2 * * *"])
    def test_rejects_bad_expressions(self, expr):
        with pytest.raises(ValueError):
            parse_cron(expr)

    def test_accepts_default(self):
        parse_cron("0 2 * * *")


class TestBackupScheduler:
    def test_next_delay_uses_clock(self, backups):
        def clock():
            return datetime(2026, 3, 1, 1, 0, tzinfo=UTC)

        scheduler = BackupScheduler(backups, "0 2 * * *", clock=clock)
        assert scheduler.next_delay() == pytest.approx(3600, abs=1)

    def test_loop_fires_after_each_sleep(self, backups):
        delays: list[float] = []

        async def fake_sleep(delay):
            delays.append(delay)
            if len(delays) > 2:
                raise asyncio.CancelledError

        scheduler = BackupScheduler(backups, sleep=fake_sleep)
        with pytest.raises(asyncio.CancelledError):
            asyncio.run(scheduler._loop())

        assert len(delays) == 3
        labels = {b["label"] for b in backups.list_backups()}
        assert labels == {"scheduled"}
        assert len(backups.list_backups()) == 2
        assert scheduler.last_result["label"] == "scheduled"

    def test_failed_run_is_logged_and_counted(self, caplog):
        manager = Mock(backup_dir="/nowhere", retain=3)
        manager.create_backup.side_effect = OSError("disk full")
        scheduler = BackupScheduler(manager)

        with caplog.at_level(logging.ERROR, logger="clipportal.services.backup_service"):
            assert asyncio.run(scheduler.run_once()) is None

        assert scheduler.failures == 1
        assert "Scheduled backup failed" in caplog.text
        assert scheduler.status()["failures"] == 1

    def test_start_and_stop(self, backups):
        scheduler = BackupScheduler(backups)

        async def scenario():
            scheduler.start()
            running = scheduler.running
            scheduler.stop()
            return running

        assert asyncio.run(scenario()) is True
        assert scheduler.running is False
        assert scheduler.status()["schedule"] == "0 2 * * *"


# ===========================================================================
# CLI
# ===========================================================================
class TestBackupCli:
    @pytest.fixture
    def cli_env(self, tmp_path, monkeypatch):
        config = tmp_path / "config.yaml"
        config.write_text(f"backup_dir: {tmp_path / 'cli-backups'}\nbackup_retain: 5\n", encoding="utf-8")
        monkeypatch.setenv("CLIPPORTAL_CONFIG", str(config))
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
        monkeypatch.setenv("CLIPPORTAL_ENCRYPTION_KEY", "")
        return tmp_path / "cli-backups"

    def test_create_then_list(self, cli_env, capsys):
        from clipportal.backup.__main__ import main

        assert main(["create", "nightly"]) == 0
        archives = [p for p in cli_env.glob("clipportal-backup-*.json") if not p.name.endswith(META_SUFFIX)]
        assert len(archives) == 1

        assert main(["list"]) == 0
        out = capsys.readouterr().out
        assert archives[0].name in out
        assert "nightly" in out

    def test_restore_unknown_archive_fails(self, cli_env):
        from clipportal.backup.__main__ import main

        assert main(["restore", "clipportal-backup-missing.json"]) == 1

    def test_export(self, cli_env, capsys):
        from clipportal.backup.__main__ import main

        assert main(["export"]) == 0
        assert "Export written to" in capsys.readouterr().out
        assert list(cli_env.glob("database-export-*.json"))

    def test_command_is_required(self, cli_env):
        from clipportal.backup.__main__ import main

        with pytest.raises(SystemExit):
            main([])
