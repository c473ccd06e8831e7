"""
clipportal.services.backup_service — Snapshots, Retention & Restore
====================================================================

Archives are single JSON documents written to the backup directory::

    clipportal-backup-2026-03-01T02-00-00-000000Z.json
    clipportal-backup-2026-03-01T02-00-00-000000Z.json.meta.json

The archive holds one ``{<collection>: [rows]}`` section per store plus the
snapshot timestamp; the sibling metadata file carries filename, creation
time, label, byte size and per-store counts.  Sessions and magic-link
tokens are never archived.

Restore loads the archive, takes a ``pre-restore`` snapshot of the live
data, then swaps every archived table in a single transaction.  All
sessions are dropped as part of the swap, so everyone signs in again
against the restored accounts.

:class:`BackupScheduler` runs ``create_backup("scheduled")`` on a cron
expression (``0 2 * * *`` by default).  A failed run is logged and the loop
keeps going.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from celery.schedules import ParseException, crontab
from sqlalchemy import DateTime, Engine, Integer, Table, delete, func, insert, select, text

from clipportal.constants import utcnow
from clipportal.database.engine import get_session
from clipportal.database.models import (
    AuditAction,
    AuditEntry,
    Clip,
    ClipRating,
    Comment,
    Friendship,
    MagicLinkToken,
    Message,
    User,
    UserSession,
)
from clipportal.errors import InvalidInput, NotFound

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "clipportal-backup-"
META_SUFFIX = ".meta.json"
_ARCHIVE_RE = re.compile(r"^clipportal-backup-[0-9A-Za-z_-]+\.json$")

# (archive section, collection key, table) in insert order; parents first
SECTIONS: tuple[tuple[str, str, Table], ...] = (
    ("users", "users", User.__table__),
    ("friendships", "friendships", Friendship.__table__),
    ("clips", "clips", Clip.__table__),
    ("clip_ratings", "ratings", ClipRating.__table__),
    ("comments", "comments", Comment.__table__),
    ("messages", "messages", Message.__table__),
    ("audit", "logs", AuditEntry.__table__),
)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _decode_row(table: Table, row: dict[str, Any]) -> dict[str, Any]:
    decoded = {}
    for column in table.columns:
        if column.name not in row:
            continue
        value = row[column.name]
        if value is not None and isinstance(column.type, DateTime):
            value = datetime.fromisoformat(value)
        decoded[column.name] = value
    return decoded


def mask_email(email: str | None) -> str | None:
    """``alice@example.com`` → ``a***@example.com``."""
    if not email or "@" not in email:
        return email
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------
class BackupManager:
    def __init__(
        self,
        engine: Engine,
        backup_dir: str | Path,
        retain: int = 30,
        *,
        cipher=None,
        audit=None,
    ) -> None:
        self.engine = engine
        self.backup_dir = Path(backup_dir)
        self.retain = retain
        self.cipher = cipher
        self.audit = audit

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------
    def snapshot(self) -> dict[str, Any]:
        """Every archived table as plain JSON-ready rows."""
        data: dict[str, Any] = {}
        with get_session(self.engine) as session:
            for section, key, table in SECTIONS:
                rows = session.execute(select(table)).mappings().all()
                data[section] = {key: [{k: _encode(v) for k, v in r.items()} for r in rows]}
        data["timestamp"] = utcnow().isoformat()
        return data

    def stats(self) -> dict[str, int]:
        with get_session(self.engine) as session:
            return {
                section: session.scalar(select(func.count()).select_from(table)) or 0
                for section, _, table in SECTIONS
            }

    def _new_archive_path(self) -> Path:
        moment = utcnow()
        while True:
            path = self.backup_dir / f"{ARCHIVE_PREFIX}{moment.strftime('%Y-%m-%dT%H-%M-%S-%fZ')}.json"
            if not path.exists():
                return path
            # Keep names unique and in creation order
            moment += timedelta(microseconds=1)

    @staticmethod
    def _write_json(path: Path, payload: dict[str, Any]) -> None:
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        os.replace(tmp, path)

    def create_backup(self, label: str = "manual") -> dict[str, Any]:
        """Write a new archive + metadata, then prune beyond ``retain``."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        data = self.snapshot()
        path = self._new_archive_path()
        self._write_json(path, data)

        metadata = {
            "filename": path.name,
            "created_at": data["timestamp"],
            "label": label,
            "size_bytes": path.stat().st_size,
            "stats": {section: len(next(iter(data[section].values()))) for section, _, _ in SECTIONS},
        }
        self._write_json(path.with_name(path.name + META_SUFFIX), metadata)
        logger.info(
            "Backup created: %s (%d users, %d clips)",
            path.name, metadata["stats"]["users"], metadata["stats"]["clips"],
        )
        self.cleanup()
        return metadata

    # ------------------------------------------------------------------
    # Listing & retention
    # ------------------------------------------------------------------
    def _archives(self) -> list[Path]:
        if not self.backup_dir.exists():
            return []
        files = [
            p for p in self.backup_dir.glob(f"{ARCHIVE_PREFIX}*.json")
            if not p.name.endswith(META_SUFFIX)
        ]
        # The embedded timestamp sorts lexically
        return sorted(files, key=lambda p: p.name, reverse=True)

    def list_backups(self) -> list[dict[str, Any]]:
        """Archives newest first, with their metadata when readable."""
        backups = []
        for path in self._archives():
            meta_path = path.with_name(path.name + META_SUFFIX)
            metadata = None
            try:
                if meta_path.exists():
                    metadata = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                logger.warning("Unreadable backup metadata: %s", meta_path.name)
            try:
                size = path.stat().st_size
            except OSError:
                continue
            backups.append({
                "filename": path.name,
                "size_bytes": size,
                "created_at": (metadata or {}).get("created_at"),
                "label": (metadata or {}).get("label"),
                "metadata": metadata,
            })
        return backups

    def cleanup(self, retain: int | None = None) -> int:
        """Delete the oldest archives beyond *retain*.  Never raises."""
        keep = self.retain if retain is None else retain
        deleted = 0
        try:
            for path in self._archives()[max(keep, 0):]:
                path.unlink(missing_ok=True)
                path.with_name(path.name + META_SUFFIX).unlink(missing_ok=True)
                deleted += 1
                logger.info("Deleted old backup: %s", path.name)
        except OSError:
            logger.exception("Backup cleanup failed")
        return deleted

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    def _archive_path(self, name: str) -> Path:
        if not name or not _ARCHIVE_RE.match(name) or name.endswith(META_SUFFIX):
            raise InvalidInput(f"Not a backup archive name: {name!r}")
        path = self.backup_dir / name
        if not path.exists():
            raise NotFound(f"Backup file not found: {name}")
        return path

    def load(self, name: str) -> dict[str, Any]:
        path = self._archive_path(name)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise InvalidInput(f"Backup archive is unreadable: {name}") from exc
        if not isinstance(data, dict) or "users" not in data:
            raise InvalidInput(f"Backup archive is missing the users store: {name}")
        return data

    def restore(self, name: str) -> dict[str, Any]:
        """Replace live data with archive *name*.

        The archive is validated first, then a ``pre-restore`` backup is
        taken, then all archived tables are swapped in one transaction and
        every session is revoked.
        """
        data = self.load(name)
        pre = self.create_backup("pre-restore")

        counts: dict[str, int] = {}
        with get_session(self.engine) as session:
            session.execute(delete(UserSession))
            session.execute(delete(MagicLinkToken))
            for _, _, table in reversed(SECTIONS):
                session.execute(delete(table))
            for section, key, table in SECTIONS:
                rows = [_decode_row(table, r) for r in (data.get(section) or {}).get(key, [])]
                if rows:
                    session.execute(insert(table), rows)
                counts[section] = len(rows)
            if session.bind.dialect.name == "postgresql":
                # Explicit ids leave serial sequences behind
                for _, _, table in SECTIONS:
                    if isinstance(table.c.id.type, Integer):
                        session.execute(text(
                            f"SELECT setval(pg_get_serial_sequence('{table.name}', 'id'), "
                            f"COALESCE((SELECT MAX(id) FROM {table.name}), 0) + 1, false)"
                        ))

        logger.info("Restored backup %s (%s)", name, counts)
        if self.audit:
            self.audit.record(None, AuditAction.BACKUP_RESTORED, {"filename": name, "pre_restore": pre["filename"]})
        return {"restored_from": name, "pre_restore": pre["filename"], "stats": counts}

    # ------------------------------------------------------------------
    # Redacted export
    # ------------------------------------------------------------------
    def export_users(self) -> dict[str, Any]:
        """Write a redacted user listing (no hashes, masked emails).

        Sessions, tokens and the audit trail are never exported.
        """
        with get_session(self.engine) as session:
            users = session.scalars(select(User).order_by(User.created_at.asc())).all()
            rows = [
                {
                    "id": u.id,
                    "username": u.username,
                    "email": mask_email(self.cipher.decrypt(u.email) if self.cipher else u.email),
                    "is_verified": bool(u.is_verified),
                    "is_admin": bool(u.is_admin),
                    "profile": u.profile,
                    "created_at": _encode(u.created_at),
                }
                for u in users
            ]
        stats = self.stats()
        stats.pop("audit", None)
        payload = {
            "exported_at": utcnow().isoformat(),
            "version": "1.0",
            "stats": stats,
            "users": rows,
        }
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        path = self.backup_dir / f"database-export-{utcnow().strftime('%Y-%m-%dT%H-%M-%S-%fZ')}.json"
        self._write_json(path, payload)
        logger.info("Exported %d users to %s", len(rows), path.name)
        return {"path": str(path), "data": payload}


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------
def parse_cron(expr: str, nowfun: Callable[[], datetime] | None = None) -> crontab:
    """Five-field cron (``minute hour day month weekday``) → celery crontab."""
    fields = (expr or "").split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression needs 5 fields, got {len(fields)}: {expr!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
            nowfun=nowfun,
        )
    except (ParseException, ValueError) as exc:
        raise ValueError(f"Invalid cron expression {expr!r}: {exc}") from exc


class BackupScheduler:
    """Asyncio loop firing ``manager.create_backup("scheduled")`` on *cron*.

    ``sleep`` and ``clock`` are injectable so the loop can be driven in
    tests without waiting for 2 AM.
    """

    def __init__(
        self,
        manager: BackupManager,
        cron: str = "0 2 * * *",
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.manager = manager
        self.cron = cron
        self._sleep = sleep
        self._clock = clock
        self.schedule = parse_cron(cron, nowfun=clock)
        self._task: asyncio.Task | None = None
        self.last_result: dict[str, Any] | None = None
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self) -> float:
        """Seconds until the next scheduled fire time."""
        remaining = self.schedule.remaining_estimate(self._clock())
        return max(0.0, remaining.total_seconds())

    async def run_once(self) -> dict[str, Any] | None:
        try:
            self.last_result = await asyncio.to_thread(self.manager.create_backup, "scheduled")
            return self.last_result
        except Exception:
            self.failures += 1
            logger.exception("Scheduled backup failed")
            return None

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.next_delay())
            await self.run_once()

    def start(self) -> None:
        """Start the background task on the running loop."""
        if self.running:
            logger.warning("Backup scheduler is already running")
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="backup-scheduler")
        logger.info("Backup scheduler started (%s)", self.cron)

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Backup scheduler stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "schedule": self.cron,
            "backup_dir": str(self.manager.backup_dir),
            "retain": self.manager.retain,
            "failures": self.failures,
        }
