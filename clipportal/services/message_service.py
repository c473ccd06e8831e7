"""
clipportal.services.message_service — Direct Messages & Clip Comments
======================================================================

Both stores are append-only: there is no edit or delete operation.  The
only mutation after insert is the recipient flipping ``read`` on messages
through :meth:`MessageStore.mark_read`.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, and_, func, or_, select, update

from clipportal.constants import (
    DEFAULT_CONVERSATION_LIMIT,
    MAX_COMMENTS_RETURNED,
    MAX_CONVERSATION_LIMIT,
    MAX_TEXT_LENGTH,
    isoformat,
)
from clipportal.database.engine import get_session, read_or_default
from clipportal.database.models import Clip, Comment, Message
from clipportal.errors import Forbidden, InvalidInput, NotFound

logger = logging.getLogger(__name__)


def _clean_text(text: str | None, what: str) -> str:
    text = (text or "").strip()
    if not text:
        raise InvalidInput(f"{what} text required")
    if len(text) > MAX_TEXT_LENGTH:
        raise InvalidInput(f"{what} must be at most {MAX_TEXT_LENGTH} characters")
    return text


# ---------------------------------------------------------------------------
# Direct messages
# ---------------------------------------------------------------------------
class MessageStore:
    """Messages between accepted friends.

    *friends* is the :class:`~clipportal.services.friend_service.FriendGraph`
    consulted on every send.
    """

    def __init__(self, engine: Engine, friends) -> None:
        self.engine = engine
        self.friends = friends

    @staticmethod
    def _message_dict(msg: Message) -> dict[str, Any]:
        return {
            "id": msg.id,
            "sender_id": msg.sender_id,
            "recipient_id": msg.recipient_id,
            "text": msg.text,
            "read": bool(msg.read),
            "created_at": isoformat(msg.created_at),
        }

    def send_message(self, sender_id: str, recipient_id: str, text: str | None) -> dict[str, Any]:
        text = _clean_text(text, "Message")
        if not self.friends.are_friends(sender_id, recipient_id):
            raise Forbidden("Can only message friends")
        with get_session(self.engine) as session:
            msg = Message(sender_id=sender_id, recipient_id=recipient_id, text=text, read=False)
            session.add(msg)
            session.flush()
            return self._message_dict(msg)

    def mark_read(self, user_id: str, other_id: str) -> int:
        """Mark everything *other_id* sent to *user_id* as read.  Idempotent."""
        with get_session(self.engine) as session:
            result = session.execute(
                update(Message)
                .where(
                    Message.sender_id == other_id,
                    Message.recipient_id == user_id,
                    Message.read.is_(False),
                )
                .values(read=True)
            )
            return result.rowcount or 0

    def _conversation(self, user_id: str, other_id: str, limit: int) -> list[dict[str, Any]]:
        stmt = (
            select(Message)
            .where(or_(
                and_(Message.sender_id == user_id, Message.recipient_id == other_id),
                and_(Message.sender_id == other_id, Message.recipient_id == user_id),
            ))
            .order_by(Message.created_at.desc())
            .limit(limit)
        )
        with get_session(self.engine) as session:
            newest_first = session.scalars(stmt).all()
            return [self._message_dict(m) for m in reversed(newest_first)]

    def conversation(
        self, user_id: str, other_id: str, limit: int = DEFAULT_CONVERSATION_LIMIT
    ) -> list[dict[str, Any]]:
        """The most recent *limit* messages of the pair, oldest first."""
        limit = max(1, min(int(limit or DEFAULT_CONVERSATION_LIMIT), MAX_CONVERSATION_LIMIT))
        return read_or_default([], self._conversation, user_id, other_id, limit)

    def unread_count(self, user_id: str) -> int:
        with get_session(self.engine) as session:
            return session.scalar(
                select(func.count()).select_from(Message).where(
                    Message.recipient_id == user_id, Message.read.is_(False)
                )
            ) or 0


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------
class CommentStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @staticmethod
    def _comment_dict(comment: Comment) -> dict[str, Any]:
        return {
            "id": comment.id,
            "clip_id": comment.clip_id,
            "user_id": comment.user_id,
            "username": comment.username,
            "text": comment.text,
            "created_at": isoformat(comment.created_at),
        }

    def add_comment(self, clip_id: str, user: dict[str, Any], text: str | None) -> dict[str, Any]:
        text = _clean_text(text, "Comment")
        with get_session(self.engine) as session:
            if session.get(Clip, clip_id) is None:
                raise NotFound("Clip not found")
            comment = Comment(
                clip_id=clip_id,
                user_id=user["id"],
                username=user["username"],
                text=text,
            )
            session.add(comment)
            session.flush()
            return self._comment_dict(comment)

    def _comments(self, clip_id: str) -> list[dict[str, Any]]:
        stmt = (
            select(Comment)
            .where(Comment.clip_id == clip_id)
            .order_by(Comment.created_at.desc())
            .limit(MAX_COMMENTS_RETURNED)
        )
        with get_session(self.engine) as session:
            return [self._comment_dict(c) for c in reversed(session.scalars(stmt).all())]

    def list_comments(self, clip_id: str) -> list[dict[str, Any]]:
        """Latest comments on a clip in chronological order."""
        return read_or_default([], self._comments, clip_id)
