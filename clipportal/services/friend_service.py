"""
clipportal.services.friend_service — Friend Graph
==================================================

One directed ``friendships`` row per (requester, target) pair:

    pending   — created by :meth:`FriendGraph.send_request`
    accepted  — after the target calls :meth:`FriendGraph.accept`
    blocked   — written by :meth:`FriendGraph.block`

Friendship is symmetric on read: an accepted row makes both users list each
other, whichever of them sent the request.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, and_, delete, func, or_, select

from clipportal.constants import isoformat, utcnow
from clipportal.database.engine import get_session, read_or_default
from clipportal.database.models import Friendship, FriendStatus, User
from clipportal.errors import Conflict, Forbidden, InvalidInput, NotFound
from clipportal.services.user_service import public_from_row

logger = logging.getLogger(__name__)


def _between(a: str, b: str):
    """WHERE clause matching an edge between *a* and *b* in either direction."""
    return or_(
        and_(Friendship.user_id == a, Friendship.friend_id == b),
        and_(Friendship.user_id == b, Friendship.friend_id == a),
    )


class FriendGraph:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------
    def send_request(self, from_id: str, to_id: str) -> dict[str, Any]:
        """Create a pending edge ``from_id → to_id``.

        Raises
        ------
        InvalidInput
            Self-request.
        NotFound
            Unknown target.
        Conflict
            Already friends, or a pending request exists in either direction.
        Forbidden
            Either side has blocked the other.
        """
        if from_id == to_id:
            raise InvalidInput("Cannot friend yourself")
        with get_session(self.engine) as session:
            if session.get(User, to_id) is None:
                raise NotFound("User not found")
            for edge in session.scalars(select(Friendship).where(_between(from_id, to_id))).all():
                if edge.status == FriendStatus.ACCEPTED:
                    raise Conflict("Already friends")
                if edge.status == FriendStatus.BLOCKED:
                    raise Forbidden("You cannot send a request to this user")
                if edge.user_id == from_id:
                    raise Conflict("Request already sent")
                raise Conflict("This user has already sent you a request")
            edge = Friendship(user_id=from_id, friend_id=to_id, status=FriendStatus.PENDING)
            session.add(edge)
            session.flush()
            return self._edge_dict(edge)

    def accept(self, requester_id: str, accepter_id: str) -> dict[str, Any]:
        """Flip the pending ``requester → accepter`` edge to accepted."""
        with get_session(self.engine) as session:
            edge = self._pending(session, requester_id, accepter_id)
            edge.status = FriendStatus.ACCEPTED
            edge.accepted_at = utcnow()
            return self._edge_dict(edge)

    def decline(self, requester_id: str, accepter_id: str) -> None:
        with get_session(self.engine) as session:
            session.delete(self._pending(session, requester_id, accepter_id))

    @staticmethod
    def _pending(session, requester_id: str, accepter_id: str) -> Friendship:
        edge = session.scalar(
            select(Friendship).where(
                Friendship.user_id == requester_id,
                Friendship.friend_id == accepter_id,
                Friendship.status == FriendStatus.PENDING,
            )
        )
        if edge is None:
            raise NotFound("No pending friend request")
        return edge

    def remove(self, user_id: str, friend_id: str) -> None:
        """Delete the accepted edge, whichever side created it."""
        with get_session(self.engine) as session:
            result = session.execute(
                delete(Friendship).where(
                    _between(user_id, friend_id),
                    Friendship.status == FriendStatus.ACCEPTED,
                )
            )
            if not result.rowcount:
                raise NotFound("Not friends")

    def block(self, user_id: str, target_id: str) -> dict[str, Any]:
        """Replace any edge between the pair with ``user_id → target_id`` blocked."""
        if user_id == target_id:
            raise InvalidInput("Cannot block yourself")
        with get_session(self.engine) as session:
            if session.get(User, target_id) is None:
                raise NotFound("User not found")
            session.execute(delete(Friendship).where(_between(user_id, target_id)))
            edge = Friendship(user_id=user_id, friend_id=target_id, status=FriendStatus.BLOCKED)
            session.add(edge)
            session.flush()
            return self._edge_dict(edge)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def are_friends(self, a: str, b: str) -> bool:
        with get_session(self.engine) as session:
            return session.scalar(
                select(Friendship.id).where(
                    _between(a, b), Friendship.status == FriendStatus.ACCEPTED
                ).limit(1)
            ) is not None

    def _friends(self, user_id: str) -> list[dict[str, Any]]:
        with get_session(self.engine) as session:
            edges = session.scalars(
                select(Friendship).where(
                    or_(Friendship.user_id == user_id, Friendship.friend_id == user_id),
                    Friendship.status == FriendStatus.ACCEPTED,
                )
            ).all()
            other_ids = [e.friend_id if e.user_id == user_id else e.user_id for e in edges]
            return self._public_users(session, other_ids)

    def list_friends(self, user_id: str) -> list[dict[str, Any]]:
        return read_or_default([], self._friends, user_id)

    def _pending_for(self, user_id: str, incoming: bool) -> list[dict[str, Any]]:
        own, other = (
            (Friendship.friend_id, Friendship.user_id)
            if incoming
            else (Friendship.user_id, Friendship.friend_id)
        )
        with get_session(self.engine) as session:
            ids = session.scalars(
                select(other)
                .where(own == user_id, Friendship.status == FriendStatus.PENDING)
                .order_by(Friendship.requested_at.asc())
            ).all()
            return self._public_users(session, list(ids))

    def list_incoming_pending(self, user_id: str) -> list[dict[str, Any]]:
        """Users who have asked *user_id* to be friends."""
        return read_or_default([], self._pending_for, user_id, True)

    def list_outgoing_pending(self, user_id: str) -> list[dict[str, Any]]:
        return read_or_default([], self._pending_for, user_id, False)

    def counts(self) -> dict[str, int]:
        with get_session(self.engine) as session:
            rows = session.execute(
                select(Friendship.status, func.count()).group_by(Friendship.status)
            ).all()
        totals = {status.value: 0 for status in FriendStatus}
        for status, n in rows:
            totals[FriendStatus(status).value] = n
        return totals

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _public_users(session, ids: list[str]) -> list[dict[str, Any]]:
        if not ids:
            return []
        users = {u.id: u for u in session.scalars(select(User).where(User.id.in_(ids))).all()}
        # Keep the caller's ordering; skip edges to users deleted meanwhile
        return [public_from_row(users[i]) for i in ids if i in users]

    @staticmethod
    def _edge_dict(edge: Friendship) -> dict[str, Any]:
        return {
            "user_id": edge.user_id,
            "friend_id": edge.friend_id,
            "status": FriendStatus(edge.status).value,
            "requested_at": isoformat(edge.requested_at),
            "accepted_at": isoformat(edge.accepted_at),
        }
