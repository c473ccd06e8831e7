"""
clipportal.api.routes.users — Search & profiles
================================================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, UploadFile
from pydantic import BaseModel

from clipportal.api.deps import get_current_user, get_services
from clipportal.database.engine import run_db
from clipportal.errors import NotFound
from clipportal.services.registry import Services
from clipportal.services.user_service import public_user

router = APIRouter(tags=["users"])
logger = logging.getLogger(__name__)


class ProfileUpdate(BaseModel):
    display_name: str | None = None
    bio: str | None = None
    theme_color: str | None = None
    social: dict[str, str] | None = None


@router.get("/users/search")
async def search_users(
    q: str = "",
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    users = await run_db(services.users.search, q, 20)
    return {"success": True, "users": [public_user(u) for u in users]}


@router.get("/profile/{username}")
async def get_profile(
    username: str,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    target = await run_db(services.users.get_by_username, username)
    if target is None:
        raise NotFound("User not found")
    friends = await run_db(services.friends.list_friends, target["id"])
    return {
        "success": True,
        "user": public_user(target),
        "friend_count": len(friends),
        "is_friend": any(f["id"] == user["id"] for f in friends),
    }


@router.get("/me/profile")
async def my_profile(user: dict = Depends(get_current_user)):
    return {"success": True, "profile": user["profile"]}


@router.post("/me/profile")
async def update_my_profile(
    body: ProfileUpdate,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    profile = await run_db(
        services.users.update_profile,
        user["id"],
        display_name=body.display_name,
        bio=body.bio,
        theme_color=body.theme_color,
        social=body.social,
    )
    return {"success": True, "profile": profile}


async def _upload_profile_image(kind: str, file: UploadFile, user: dict, services: Services) -> dict:
    content = await file.read()
    path = await run_db(services.media.save_image, file.filename or "", content, file.content_type)
    profile = await run_db(services.users.set_profile_image, user["id"], kind, path)
    logger.info("Updated %s for user %s", kind, user["id"])
    return {"success": True, "profile": profile, "url": path}


@router.post("/me/profile/avatar")
async def upload_avatar(
    file: UploadFile,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await _upload_profile_image("avatar", file, user, services)


@router.post("/me/profile/banner")
async def upload_banner(
    file: UploadFile,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await _upload_profile_image("banner", file, user, services)
