"""
clipportal.database.models — SQLAlchemy 2.0 Data Models
========================================================

Tables:
- users              — Accounts (encrypted email + blind index, profile JSON)
- friendships        — Directed pending / accepted / blocked edges
- user_sessions      — Login sessions (hash of the signed token only)
- magic_link_tokens  — Single-use verify / login links
- clips              — Submitted media with moderation status + running mean
- clip_ratings       — One row per (clip, rater); the rater set
- comments           — Append-only clip comments
- messages           — Append-only direct messages with a read flag
- audit_log          — Bounded append-only security trail
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from clipportal.constants import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls) -> list[str]:
    # Persist "pending" rather than the member name "PENDING"
    return [member.value for member in enum_cls]


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Clip Portal ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class FriendStatus(enum.StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    BLOCKED = "blocked"


class ClipStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"


class AuditAction(enum.StrEnum):
    """Action tags recorded in audit_log."""
    USER_REGISTERED = "USER_REGISTERED"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    USER_VERIFIED = "USER_VERIFIED"
    MAGIC_LINK_REQUESTED = "MAGIC_LINK_REQUESTED"
    MAGIC_LINK_LOGIN = "MAGIC_LINK_LOGIN"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    FRIEND_REQUEST_SENT = "FRIEND_REQUEST_SENT"
    FRIEND_REQUEST_ACCEPTED = "FRIEND_REQUEST_ACCEPTED"
    USER_PROMOTED = "USER_PROMOTED"
    USER_DELETED = "USER_DELETED"
    CLIP_APPROVED = "CLIP_APPROVED"
    CLIP_DELETED = "CLIP_DELETED"
    BACKUP_RESTORED = "BACKUP_RESTORED"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(32), nullable=False)
    # AES-GCM ciphertext ("enc:v1:…") or clear text when no key is configured
    email: Mapped[str] = mapped_column(Text, nullable=False)
    # Deterministic lookup key; carries the case-insensitive uniqueness
    email_lookup: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    profile: Mapped[dict | None] = mapped_column(JSON, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    sessions: Mapped[list[UserSession]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    magic_links: Mapped[list[MagicLinkToken]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("uq_users_username_lower", func.lower(username), unique=True),
        Index("ix_users_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.username!r} admin={self.is_admin}>"


# ---------------------------------------------------------------------------
# Friendships — one directed row per (requester, target)
# ---------------------------------------------------------------------------
class Friendship(Base):
    __tablename__ = "friendships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    friend_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[FriendStatus] = mapped_column(
        Enum(
            FriendStatus,
            name="friend_status",
            native_enum=False,
            values_callable=_enum_values,
        ),
        default=FriendStatus.PENDING,
    )
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    __table_args__ = (
        UniqueConstraint("user_id", "friend_id", name="uq_friendships_pair"),
        Index("ix_friendships_friend_id", "friend_id"),
    )

    def __repr__(self) -> str:
        return f"<Friendship {self.user_id}→{self.friend_id} {self.status}>"


# ---------------------------------------------------------------------------
# Sessions & magic links
# ---------------------------------------------------------------------------
class UserSession(Base):
    __tablename__ = "user_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    ip_address: Mapped[str | None] = mapped_column(String(64), default=None)
    user_agent: Mapped[str | None] = mapped_column(String(255), default=None)

    user: Mapped[User] = relationship(back_populates="sessions")

    __table_args__ = (
        Index("ix_user_sessions_user_id", "user_id"),
        Index("ix_user_sessions_expires_at", "expires_at"),
    )


class MagicLinkToken(Base):
    __tablename__ = "magic_link_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    purpose: Mapped[str] = mapped_column(String(16), nullable=False)  # verify | login
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped[User] = relationship(back_populates="magic_links")


# ---------------------------------------------------------------------------
# Clips
# ---------------------------------------------------------------------------
class Clip(Base):
    __tablename__ = "clips"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String(50), default="Other")
    url: Mapped[str | None] = mapped_column(Text, default=None)
    file_path: Mapped[str | None] = mapped_column(String(255), default=None)
    thumbnail: Mapped[str] = mapped_column(Text, nullable=False)
    duration: Mapped[str] = mapped_column(String(16), default="0:00")
    duration_seconds: Mapped[float | None] = mapped_column(Float, default=None)
    status: Mapped[ClipStatus] = mapped_column(
        Enum(
            ClipStatus,
            name="clip_status",
            native_enum=False,
            values_callable=_enum_values,
        ),
        default=ClipStatus.PENDING,
    )
    # Unrounded running mean; serialised to one decimal place
    rating: Mapped[float] = mapped_column(Float, default=0.0)
    rating_count: Mapped[int] = mapped_column(Integer, default=0)
    submitted_by: Mapped[str | None] = mapped_column(String(36), default=None)
    submitted_by_name: Mapped[str | None] = mapped_column(String(32), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    ratings: Mapped[list[ClipRating]] = relationship(
        back_populates="clip", cascade="all, delete-orphan"
    )
    comments: Mapped[list[Comment]] = relationship(
        back_populates="clip", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_clips_status_created", "status", "created_at"),
        Index("ix_clips_submitted_by", "submitted_by"),
    )

    def __repr__(self) -> str:
        return f"<Clip id={self.id} title={self.title!r} status={self.status}>"


class ClipRating(Base):
    __tablename__ = "clip_ratings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    clip_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("clips.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    clip: Mapped[Clip] = relationship(back_populates="ratings")

    __table_args__ = (
        UniqueConstraint("clip_id", "user_id", name="uq_clip_ratings_rater"),
    )


# ---------------------------------------------------------------------------
# Comments & messages — append-only
# ---------------------------------------------------------------------------
class Comment(Base):
    __tablename__ = "comments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    clip_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("clips.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(String(36), default=None)
    username: Mapped[str] = mapped_column(String(32), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    clip: Mapped[Clip] = relationship(back_populates="comments")

    __table_args__ = (
        Index("ix_comments_clip_created", "clip_id", "created_at"),
    )


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    sender_id: Mapped[str] = mapped_column(String(36), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(36), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_messages_pair", "sender_id", "recipient_id"),
        Index("ix_messages_recipient_read", "recipient_id", "read"),
    )


# ---------------------------------------------------------------------------
# Audit log — bounded, oldest rows pruned first
# ---------------------------------------------------------------------------
class AuditEntry(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String(36), default=None)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, default=None)  # encrypted JSON
    ip_address: Mapped[str | None] = mapped_column(String(64), default=None)
    user_agent: Mapped[str | None] = mapped_column(String(255), default=None)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_audit_log_user_id", "user_id"),
    )
