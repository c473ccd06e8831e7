"""
clipportal.backup.__main__ — Entry point for ``python -m clipportal.backup``
=============================================================================

Commands::

    python -m clipportal.backup create [label]   # snapshot now
    python -m clipportal.backup list             # newest first
    python -m clipportal.backup restore <name>   # takes a pre-restore snapshot first
    python -m clipportal.backup export           # redacted user export
    python -m clipportal.backup start            # run the cron scheduler in the foreground

Reads ``DATABASE_URL`` / ``CLIPPORTAL_ENCRYPTION_KEY`` from ``.env`` and the
backup directory, retention and schedule from ``config.yaml``.  Exits with
status 1 when the command fails.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

from clipportal.config import load_config
from clipportal.database.engine import create_db_engine, init_db
from clipportal.errors import ClipPortalError
from clipportal.services.audit_service import AuditLog
from clipportal.services.backup_service import BackupManager, BackupScheduler
from clipportal.services.crypto import FieldCipher

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("clipportal.backup")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m clipportal.backup", description="Clip Portal backups")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a backup now")
    create.add_argument("label", nargs="?", default="manual")

    sub.add_parser("list", help="List backups, newest first")

    restore = sub.add_parser("restore", help="Restore from a backup archive")
    restore.add_argument("name", help="Archive filename as shown by 'list'")

    sub.add_parser("export", help="Write a redacted user export")
    sub.add_parser("start", help="Run the backup scheduler until interrupted")
    return parser


def _print_backups(manager: BackupManager) -> None:
    backups = manager.list_backups()
    if not backups:
        print("No backups found.")
        return
    for b in backups:
        size_kb = b["size_bytes"] / 1024
        print(f"{b['filename']}  {size_kb:8.1f} KB  {b['label'] or '-':<12} {b['created_at'] or ''}")


async def _run_scheduler(scheduler: BackupScheduler) -> None:
    scheduler.start()
    try:
        # The loop only ends on cancellation
        await asyncio.Event().wait()
    finally:
        scheduler.stop()


def main(argv: list[str] | None = None) -> int:
    """Run one CLI command and return the process exit code."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    cfg = load_config()
    engine = create_db_engine()
    init_db(engine)
    cipher = FieldCipher.from_env()
    manager = BackupManager(
        engine,
        cfg.backup_path,
        cfg.backup_retain,
        cipher=cipher,
        audit=AuditLog(engine, cipher, cap=cfg.audit_cap),
    )

    try:
        if args.command == "create":
            meta = manager.create_backup(args.label)
            print(f"Backup created: {meta['filename']}")
            print(f"Stats: {meta['stats']}")
        elif args.command == "list":
            _print_backups(manager)
        elif args.command == "restore":
            result = manager.restore(args.name)
            print(f"Restored from {result['restored_from']}")
            print(f"Pre-restore backup: {result['pre_restore']}")
            print(f"Stats: {result['stats']}")
        elif args.command == "export":
            result = manager.export_users()
            print(f"Export written to {result['path']}")
        elif args.command == "start":
            scheduler = BackupScheduler(manager, cfg.backup_schedule)
            logger.info("Next backup in %.0f seconds", scheduler.next_delay())
            try:
                asyncio.run(_run_scheduler(scheduler))
            except KeyboardInterrupt:
                logger.info("Scheduler stopped")
    except (ClipPortalError, OSError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
