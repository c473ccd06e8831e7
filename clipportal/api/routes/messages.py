"""
clipportal.api.routes.messages — Direct messages between friends
=================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from clipportal.api.deps import get_current_user, get_services
from clipportal.api.realtime import manager
from clipportal.constants import DEFAULT_CONVERSATION_LIMIT
from clipportal.database.engine import run_db
from clipportal.services.registry import Services

router = APIRouter(prefix="/messages", tags=["messages"])


class MessageBody(BaseModel):
    text: str | None = None


@router.get("/unread-count")
async def unread_count(user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"success": True, "count": await run_db(services.messages.unread_count, user["id"])}


@router.get("/with/{other_id}")
async def conversation(
    other_id: str,
    limit: int = DEFAULT_CONVERSATION_LIMIT,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    messages = await run_db(services.messages.conversation, user["id"], other_id, limit)
    return {"success": True, "messages": messages}


@router.post("/mark-read/{other_id}")
async def mark_read(
    other_id: str,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    updated = await run_db(services.messages.mark_read, user["id"], other_id)
    return {"success": True, "updated": updated}


@router.post("/{to_id}")
async def send_message(
    to_id: str,
    body: MessageBody,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    message = await run_db(services.messages.send_message, user["id"], to_id, body.text)
    await manager.send_to_user(to_id, {"type": "message", "message": message})
    return {"success": True, "message": message}
