"""
clipportal.api.routes.clips — Catalog, submission, ratings & comments
======================================================================
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Form, Query, UploadFile
from pydantic import BaseModel

from clipportal.api.deps import get_current_admin, get_current_user, get_optional_user, get_services
from clipportal.database.engine import run_db
from clipportal.errors import InvalidInput
from clipportal.services.registry import Services

router = APIRouter(tags=["clips"])
logger = logging.getLogger(__name__)


class RateBody(BaseModel):
    # Left untyped so a bad value reaches the catalog's own validation
    rating: Any = None


class CommentBody(BaseModel):
    text: str | None = None


def _is_admin(user: dict | None) -> bool:
    return bool(user and user["is_admin"])


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
@router.get("/clips")
async def list_clips(
    category: str | None = None,
    status: str | None = None,
    sort_by: str = Query("newest", alias="sortBy"),
    user: dict | None = Depends(get_optional_user),
    services: Services = Depends(get_services),
):
    """Approved clips for everyone; admins may also filter by ``status``."""
    result = await run_db(services.clips.list, category, status, sort_by, _is_admin(user))
    return {"success": True, **result}


@router.get("/clips/{clip_id}")
async def get_clip(
    clip_id: str,
    user: dict | None = Depends(get_optional_user),
    services: Services = Depends(get_services),
):
    clip = await run_db(services.clips.get, clip_id, user["id"] if user else None, _is_admin(user))
    return {"success": True, "clip": clip}


@router.get("/stats")
async def site_stats(services: Services = Depends(get_services)):
    return {"success": True, "stats": await run_db(services.clips.stats)}


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------
@router.post("/clips")
async def submit_clip(
    title: str = Form(""),
    url: str | None = Form(None),
    category: str | None = Form(None),
    description: str | None = Form(None),
    file: UploadFile | None = None,
    user: dict | None = Depends(get_optional_user),
    services: Services = Depends(get_services),
):
    """Accept a link or an upload; the clip waits for admin approval."""
    file_path = None
    if file is not None and file.filename:
        if not title.strip():
            raise InvalidInput("Title is required")
        content = await file.read()
        file_path = await run_db(services.media.save_video, file.filename, content, file.content_type)

    clip = await run_db(
        services.clips.submit,
        title,
        url=url,
        file_path=file_path,
        category=category,
        description=description,
        submitter=user,
    )
    return {"success": True, "clip": clip, "message": "Clip submitted and awaiting admin approval."}


# ---------------------------------------------------------------------------
# Ratings & comments
# ---------------------------------------------------------------------------
@router.post("/clips/{clip_id}/rate")
async def rate_clip(
    clip_id: str,
    body: RateBody,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    clip = await run_db(services.clips.rate, clip_id, user["id"], body.rating)
    return {"success": True, "clip": clip, "message": "Rating submitted successfully"}


@router.get("/clips/{clip_id}/comments")
async def list_comments(clip_id: str, services: Services = Depends(get_services)):
    return {"success": True, "comments": await run_db(services.comments.list_comments, clip_id)}


@router.post("/clips/{clip_id}/comments")
async def add_comment(
    clip_id: str,
    body: CommentBody,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    comment = await run_db(services.comments.add_comment, clip_id, user, body.text)
    return {"success": True, "comment": comment}


@router.delete("/clips/{clip_id}")
async def delete_clip(
    clip_id: str,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    clip = await run_db(services.clips.delete, clip_id, admin["id"])
    logger.info("Admin %s deleted clip %s", admin["username"], clip_id)
    return {"success": True, "message": "Clip deleted successfully", "deleted_clip": clip}
