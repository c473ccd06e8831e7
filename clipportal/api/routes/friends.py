"""
clipportal.api.routes.friends — Friend requests & friend list
==============================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from clipportal.api.deps import client_ip, get_current_user, get_services, user_agent
from clipportal.api.realtime import manager
from clipportal.database.engine import run_db
from clipportal.database.models import AuditAction
from clipportal.services.registry import Services
from clipportal.services.user_service import public_user

router = APIRouter(prefix="/friends", tags=["friends"])


@router.get("")
async def list_friends(user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    friends = await run_db(services.friends.list_friends, user["id"])
    incoming = await run_db(services.friends.list_incoming_pending, user["id"])
    outgoing = await run_db(services.friends.list_outgoing_pending, user["id"])
    return {
        "success": True,
        "friends": friends,
        "incoming_requests": incoming,
        "outgoing_requests": outgoing,
    }


@router.post("/request/{target_id}")
async def send_request(
    target_id: str,
    request: Request,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await run_db(services.friends.send_request, user["id"], target_id)
    await run_db(
        services.audit.record,
        user["id"],
        AuditAction.FRIEND_REQUEST_SENT,
        {"target_user_id": target_id},
        client_ip(request),
        user_agent(request),
    )
    await manager.send_to_user(target_id, {"type": "friend_request", "from": public_user(user)})
    return {"success": True, "message": "Friend request sent"}


@router.post("/accept/{requester_id}")
async def accept_request(
    requester_id: str,
    request: Request,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await run_db(services.friends.accept, requester_id, user["id"])
    await run_db(
        services.audit.record,
        user["id"],
        AuditAction.FRIEND_REQUEST_ACCEPTED,
        {"requester_user_id": requester_id},
        client_ip(request),
        user_agent(request),
    )
    await manager.send_to_user(requester_id, {"type": "friend_accepted", "from": public_user(user)})
    return {"success": True, "message": "Friend request accepted"}


@router.post("/decline/{requester_id}")
async def decline_request(
    requester_id: str,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await run_db(services.friends.decline, requester_id, user["id"])
    return {"success": True, "message": "Friend request declined"}


@router.delete("/{friend_id}")
async def remove_friend(
    friend_id: str,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await run_db(services.friends.remove, user["id"], friend_id)
    return {"success": True, "message": "Friend removed"}
