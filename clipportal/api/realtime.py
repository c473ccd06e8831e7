"""
clipportal.api.realtime — Per-user WebSocket push channel
==========================================================

``WS /api/ws?token=<session token>`` (the ``auth`` cookie also works).
The server pushes::

    {"type": "message", "message": {...}}      # new direct message
    {"type": "friend_request", "from": {...}}  # incoming friend request
    {"type": "friend_accepted", "from": {...}} # your request was accepted

Clients may send ``{"type": "ping"}`` and get ``{"type": "pong"}`` back.
Nothing is queued for offline users; the REST endpoints remain the source
of truth.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from clipportal.api.deps import AUTH_COOKIE, get_services
from clipportal.database.engine import run_db
from clipportal.errors import Unauthenticated
from clipportal.services.registry import Services

logger = logging.getLogger(__name__)
router = APIRouter(tags=["realtime"])

# Policy violation
_CLOSE_UNAUTHORIZED = 1008


class ConnectionManager:
    """Open sockets grouped by user id (one user may have several tabs)."""

    def __init__(self) -> None:
        self.active: dict[str, set[WebSocket]] = defaultdict(set)

    def connect(self, user_id: str, websocket: WebSocket) -> None:
        self.active[user_id].add(websocket)

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self.active.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.active[user_id]

    def is_online(self, user_id: str) -> bool:
        return bool(self.active.get(user_id))

    async def send_to_user(self, user_id: str, payload: dict[str, Any]) -> int:
        """Push *payload* to every socket of *user_id*; returns deliveries."""
        delivered = 0
        for ws in list(self.active.get(user_id, ())):
            try:
                await ws.send_json(payload)
                delivered += 1
            except (RuntimeError, WebSocketDisconnect):
                # Socket died without a clean close
                self.disconnect(user_id, ws)
        return delivered


manager = ConnectionManager()


@router.websocket("/ws")
async def user_socket(websocket: WebSocket, services: Services = Depends(get_services)):
    token = websocket.query_params.get("token") or websocket.cookies.get(AUTH_COOKIE)
    try:
        user_id = await run_db(services.auth.validate_session, token)
    except Unauthenticated:
        await websocket.close(code=_CLOSE_UNAUTHORIZED)
        return

    await websocket.accept()
    manager.connect(user_id, websocket)
    logger.debug("WebSocket opened for %s", user_id)
    try:
        while True:
            data = await websocket.receive_json()
            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    except ValueError:
        logger.info("Closing WebSocket for %s after malformed frame", user_id)
        await websocket.close()
    finally:
        manager.disconnect(user_id, websocket)
