"""
clipportal.api.routes.admin — Moderation, accounts, audit & backups
====================================================================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from clipportal.api.deps import get_current_admin, get_services
from clipportal.database.engine import run_db
from clipportal.services.registry import Services
from clipportal.services.user_service import public_user

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


class BackupRequest(BaseModel):
    label: str = "manual"


def _admin_view(record: dict) -> dict:
    return {**public_user(record), "is_admin": record["is_admin"], "is_verified": record["is_verified"]}


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------
@router.get("/users")
async def list_users(
    q: str = "",
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    if q.strip():
        users = await run_db(services.users.search, q, 50)
    else:
        users = await run_db(services.users.list, 50, 0)
    return {"success": True, "users": [_admin_view(u) for u in users]}


@router.post("/users/{user_id}/make-admin")
async def make_admin(
    user_id: str,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    user = await run_db(services.users.set_admin, user_id, True, admin["id"])
    return {"success": True, "user": _admin_view(user)}


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    removed = await run_db(services.users.delete, user_id, admin["id"])
    return {"success": True, "message": "User deleted successfully", "removed": removed}


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------
@router.get("/pending-count")
async def pending_count(admin: dict = Depends(get_current_admin), services: Services = Depends(get_services)):
    return {"success": True, "count": await run_db(services.clips.pending_count)}


@router.post("/clips/{clip_id}/approve")
async def approve_clip(
    clip_id: str,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    clip = await run_db(services.clips.approve, clip_id, admin["id"])
    return {"success": True, "clip": clip}


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
@router.get("/audit")
async def audit_log(
    user_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    entries = await run_db(services.audit.entries, user_id, limit, offset)
    return {"success": True, "entries": entries, "total": await run_db(services.audit.count)}


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------
@router.get("/backups")
async def list_backups(admin: dict = Depends(get_current_admin), services: Services = Depends(get_services)):
    return {
        "success": True,
        "backups": await run_db(services.backups.list_backups),
        "scheduler": services.scheduler.status(),
    }


@router.post("/backups")
async def create_backup(
    body: BackupRequest | None = None,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    label = body.label if body else "manual"
    meta = await run_db(services.backups.create_backup, label)
    logger.info("Admin %s created backup %s", admin["username"], meta["filename"])
    return {"success": True, "backup": meta}


@router.post("/backups/{name}/restore")
async def restore_backup(
    name: str,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    """Swap in archive *name*.  Every session, including this one, ends."""
    result = await run_db(services.backups.restore, name)
    logger.warning("Admin %s restored backup %s", admin["username"], name)
    return {"success": True, **result}
