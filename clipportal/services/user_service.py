"""
clipportal.services.user_service — User Directory
==================================================

CRUD over ``users`` with encrypted-at-rest email addresses.

* Usernames are unique case-insensitively (functional index on
  ``lower(username)``).
* Emails are unique case-insensitively through the ``email_lookup`` blind
  index; the ``email`` column itself holds AES-GCM ciphertext whenever an
  encryption key is configured.
* Every read path returns a plain ``dict`` with the email already
  decrypted.  Nothing outside this module touches ``User`` rows for
  writing.

Deleting a user cascades to their friend edges, direct messages, clips
(with media files), sessions and magic-link tokens.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, delete, func, or_, select
from sqlalchemy.exc import IntegrityError

from clipportal.constants import (
    MAX_BIO_LENGTH,
    MAX_DISPLAY_NAME_LENGTH,
    MAX_SOCIAL_LENGTH,
    SOCIAL_KEYS,
    THEME_COLOR_REGEX,
    isoformat,
)
from clipportal.database.engine import get_session, read_or_default
from clipportal.database.models import (
    AuditAction,
    Friendship,
    MagicLinkToken,
    Message,
    User,
    UserSession,
)
from clipportal.errors import Conflict, InvalidInput, NotFound, PolicyViolation
from clipportal.services.crypto import FieldCipher

logger = logging.getLogger(__name__)

_UPDATABLE = frozenset({"username", "email", "password_hash", "is_verified", "is_admin", "profile"})
PROFILE_IMAGE_KINDS = ("avatar", "banner")


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------
def default_profile() -> dict[str, Any]:
    return {
        "display_name": None,
        "bio": "",
        "theme_color": None,
        "avatar": None,
        "banner": None,
        "social": {key: "" for key in SOCIAL_KEYS},
    }


def normalize_profile(raw: dict | None) -> dict[str, Any]:
    profile = default_profile()
    if raw:
        profile.update({k: v for k, v in raw.items() if k in profile and k != "social"})
        profile["social"].update(
            {k: v for k, v in (raw.get("social") or {}).items() if k in SOCIAL_KEYS}
        )
    return profile


def public_from_row(user: User) -> dict[str, Any]:
    """Fields any logged-in member may see."""
    return {
        "id": user.id,
        "username": user.username,
        "created_at": isoformat(user.created_at),
        "profile": normalize_profile(user.profile),
    }


def public_user(record: dict[str, Any]) -> dict[str, Any]:
    """Same projection as :func:`public_from_row`, from a directory record."""
    return {
        "id": record["id"],
        "username": record["username"],
        "created_at": record["created_at"],
        "profile": record["profile"],
    }


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------
class UserDirectory:
    """Owns the ``users`` table.

    Parameters
    ----------
    engine:
        Database engine.
    cipher:
        Field cipher for the email column.
    media:
        :class:`~clipportal.services.upload_service.MediaStore`, used to
        drop profile images.
    clips:
        Optional :class:`~clipportal.services.clip_service.ClipCatalog`;
        when present, :meth:`delete` removes the user's clips through it.
    audit:
        Optional :class:`~clipportal.services.audit_service.AuditLog`.
    """

    def __init__(self, engine: Engine, cipher: FieldCipher, media=None, clips=None, audit=None) -> None:
        self.engine = engine
        self.cipher = cipher
        self.media = media
        self.clips = clips
        self.audit = audit

    def _record(self, user: User) -> dict[str, Any]:
        return {
            "id": user.id,
            "username": user.username,
            "email": self.cipher.decrypt(user.email),
            "password_hash": user.password_hash,
            "is_verified": bool(user.is_verified),
            "is_admin": bool(user.is_admin),
            "profile": normalize_profile(user.profile),
            "created_at": isoformat(user.created_at),
            "updated_at": isoformat(user.updated_at),
        }

    # ------------------------------------------------------------------
    # Uniqueness helpers (run inside an open session)
    # ------------------------------------------------------------------
    @staticmethod
    def _username_taken(session, username: str, exclude_id: str | None = None) -> bool:
        stmt = select(User.id).where(func.lower(User.username) == username.lower())
        if exclude_id:
            stmt = stmt.where(User.id != exclude_id)
        return session.scalar(stmt.limit(1)) is not None

    @staticmethod
    def _lookup_taken(session, lookup: str, exclude_id: str | None = None) -> bool:
        stmt = select(User.id).where(User.email_lookup == lookup)
        if exclude_id:
            stmt = stmt.where(User.id != exclude_id)
        return session.scalar(stmt.limit(1)) is not None

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------
    def create(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        is_verified: bool = False,
        is_admin: bool = False,
        profile: dict | None = None,
    ) -> dict[str, Any]:
        """Insert a user.  Raises :class:`Conflict` on a duplicate name or email."""
        email = email.strip().lower()
        lookup = self.cipher.blind_index(email)
        with get_session(self.engine) as session:
            if self._username_taken(session, username):
                raise Conflict("Username already taken")
            if self._lookup_taken(session, lookup):
                raise Conflict("Email already in use")
            user = User(
                username=username,
                email=self.cipher.encrypt(email),
                email_lookup=lookup,
                password_hash=password_hash,
                is_verified=is_verified,
                is_admin=is_admin,
                profile=profile,
            )
            session.add(user)
            try:
                session.flush()
            except IntegrityError:
                # Lost a race with a concurrent registration
                raise Conflict("Username or email already in use") from None
            logger.info("Created user %s (admin=%s)", user.id, is_admin)
            return self._record(user)

    def get_by_id(self, user_id: str) -> dict[str, Any] | None:
        with get_session(self.engine) as session:
            user = session.get(User, user_id)
            return self._record(user) if user else None

    def get_by_username(self, username: str) -> dict[str, Any] | None:
        if not username:
            return None
        with get_session(self.engine) as session:
            user = session.scalar(
                select(User).where(func.lower(User.username) == username.lower())
            )
            return self._record(user) if user else None

    def get_by_email(self, email: str) -> dict[str, Any] | None:
        if not email:
            return None
        lookup = self.cipher.blind_index(email)
        with get_session(self.engine) as session:
            user = session.scalar(select(User).where(User.email_lookup == lookup))
            return self._record(user) if user else None

    def get_by_username_or_email(self, value: str) -> dict[str, Any] | None:
        return self.get_by_username(value) or self.get_by_email(value)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------
    def update(self, user_id: str, **fields: Any) -> dict[str, Any]:
        """Apply a partial update.

        ``email`` is re-encrypted and re-indexed; a new username or email
        that collides with another account raises :class:`Conflict`.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise InvalidInput(f"Unknown user fields: {', '.join(sorted(unknown))}")

        with get_session(self.engine) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound("User not found")

            if "username" in fields and fields["username"] != user.username:
                if self._username_taken(session, fields["username"], exclude_id=user_id):
                    raise Conflict("Username already taken")
                user.username = fields["username"]
            if "email" in fields:
                email = str(fields["email"]).strip().lower()
                lookup = self.cipher.blind_index(email)
                if self._lookup_taken(session, lookup, exclude_id=user_id):
                    raise Conflict("Email already in use")
                user.email = self.cipher.encrypt(email)
                user.email_lookup = lookup
            for key in ("password_hash", "is_verified", "is_admin"):
                if key in fields:
                    setattr(user, key, fields[key])
            if "profile" in fields:
                user.profile = fields["profile"]
            try:
                session.flush()
            except IntegrityError:
                raise Conflict("Username or email already in use") from None
            return self._record(user)

    # ------------------------------------------------------------------
    # Delete (cascading)
    # ------------------------------------------------------------------
    def delete(self, user_id: str, actor_id: str | None = None) -> dict[str, int]:
        """Remove a user and everything hanging off them.

        Raises
        ------
        NotFound
            Unknown id.
        PolicyViolation
            ``actor_id == user_id`` (admins cannot delete themselves here),
            or the target is the last remaining admin.
        """
        with get_session(self.engine) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound("User not found")
            if actor_id is not None and actor_id == user_id:
                raise PolicyViolation("You cannot delete your own account from admin panel.")
            if user.is_admin and self._admin_count(session) <= 1:
                raise PolicyViolation("There must be at least one admin.")
            username = user.username

        clips_removed = self.clips.delete_by_submitter(user_id) if self.clips else 0

        with get_session(self.engine) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound("User not found")
            images = [user.profile.get(kind) for kind in PROFILE_IMAGE_KINDS] if user.profile else []

            friendships = session.execute(
                delete(Friendship).where(
                    or_(Friendship.user_id == user_id, Friendship.friend_id == user_id)
                )
            ).rowcount
            messages = session.execute(
                delete(Message).where(
                    or_(Message.sender_id == user_id, Message.recipient_id == user_id)
                )
            ).rowcount
            session.execute(delete(UserSession).where(UserSession.user_id == user_id))
            session.execute(delete(MagicLinkToken).where(MagicLinkToken.user_id == user_id))
            session.delete(user)

        if self.media:
            for image in images:
                self.media.delete(image)

        summary = {
            "clips": clips_removed,
            "friendships": friendships or 0,
            "messages": messages or 0,
        }
        logger.info("Deleted user %s (%s): %s", user_id, username, summary)
        if self.audit:
            self.audit.record(actor_id, AuditAction.USER_DELETED, {"user_id": user_id, "username": username, **summary})
        return summary

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------
    def _search(self, query: str, limit: int) -> list[dict[str, Any]]:
        needle = (query or "").strip().lower()
        stmt = select(User).order_by(User.username.asc()).limit(max(1, limit))
        if needle:
            stmt = stmt.where(func.lower(User.username).contains(needle, autoescape=True))
        with get_session(self.engine) as session:
            return [self._record(u) for u in session.scalars(stmt).all()]

    def search(self, query: str, limit: int = 20) -> list[dict[str, Any]]:
        """Case-insensitive substring match on username."""
        return read_or_default([], self._search, query, limit)

    def _list(self, limit: int, offset: int) -> list[dict[str, Any]]:
        stmt = (
            select(User)
            .order_by(User.created_at.asc(), User.id.asc())
            .limit(max(1, limit))
            .offset(max(0, offset))
        )
        with get_session(self.engine) as session:
            return [self._record(u) for u in session.scalars(stmt).all()]

    def list(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        return read_or_default([], self._list, limit, offset)

    def count(self) -> int:
        with get_session(self.engine) as session:
            return session.scalar(select(func.count()).select_from(User)) or 0

    @staticmethod
    def _admin_count(session) -> int:
        return session.scalar(
            select(func.count()).select_from(User).where(User.is_admin.is_(True))
        ) or 0

    def count_admins(self) -> int:
        with get_session(self.engine) as session:
            return self._admin_count(session)

    # ------------------------------------------------------------------
    # Admin flag
    # ------------------------------------------------------------------
    def set_admin(self, user_id: str, is_admin: bool = True, actor_id: str | None = None) -> dict[str, Any]:
        with get_session(self.engine) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound("User not found")
            if user.is_admin and not is_admin and self._admin_count(session) <= 1:
                raise PolicyViolation("There must be at least one admin.")
            user.is_admin = is_admin
            record = self._record(user)
        if self.audit and is_admin:
            self.audit.record(actor_id, AuditAction.USER_PROMOTED, {"user_id": user_id, "username": record["username"]})
        return record

    def ensure_admin(self) -> str | None:
        """Bootstrap step: promote the oldest account when no admin exists.

        Returns the promoted username, or None when nothing changed.
        """
        with get_session(self.engine) as session:
            if self._admin_count(session) > 0:
                return None
            oldest = session.scalar(
                select(User).order_by(User.created_at.asc(), User.id.asc()).limit(1)
            )
            if oldest is None:
                return None
            oldest.is_admin = True
            logger.info("Promoted initial user '%s' to admin", oldest.username)
            return oldest.username

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------
    def update_profile(
        self,
        user_id: str,
        *,
        display_name: str | None = None,
        bio: str | None = None,
        theme_color: str | None = None,
        social: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Validate and merge profile fields; ``None`` leaves a field unchanged."""
        if display_name is not None and len(display_name.strip()) > MAX_DISPLAY_NAME_LENGTH:
            raise InvalidInput(f"Display name must be at most {MAX_DISPLAY_NAME_LENGTH} characters")
        if bio is not None and len(bio) > MAX_BIO_LENGTH:
            raise InvalidInput(f"Bio must be at most {MAX_BIO_LENGTH} characters")
        if theme_color and not THEME_COLOR_REGEX.match(theme_color):
            raise InvalidInput("Theme color must look like #rrggbb")
        for key, value in (social or {}).items():
            if key not in SOCIAL_KEYS:
                raise InvalidInput(f"Unknown social link: {key}")
            if len(value or "") > MAX_SOCIAL_LENGTH:
                raise InvalidInput(f"Social link '{key}' is too long")

        with get_session(self.engine) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound("User not found")
            profile = normalize_profile(user.profile)
            if display_name is not None:
                profile["display_name"] = display_name.strip() or None
            if bio is not None:
                profile["bio"] = bio.strip()
            if theme_color is not None:
                profile["theme_color"] = theme_color or None
            for key, value in (social or {}).items():
                profile["social"][key] = (value or "").strip()
            # Reassign so the JSON column is flagged dirty
            user.profile = profile
            return profile

    def set_profile_image(self, user_id: str, kind: str, path: str) -> dict[str, Any]:
        """Point the avatar or banner at *path*, removing the previous file."""
        if kind not in PROFILE_IMAGE_KINDS:
            raise InvalidInput(f"Unknown profile image kind: {kind}")
        with get_session(self.engine) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound("User not found")
            profile = normalize_profile(user.profile)
            previous = profile.get(kind)
            profile[kind] = path
            user.profile = profile
        if self.media and previous and previous != path:
            self.media.delete(previous)
        return profile

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------
    def encrypt_plain_emails(self) -> int:
        """Encrypt clear-text emails and rebuild blind indexes.

        Run at startup after a key is configured for a directory that was
        populated in clear mode.  Returns the number of rows rewritten.
        """
        if not self.cipher.enabled:
            return 0
        changed = 0
        with get_session(self.engine) as session:
            for user in session.scalars(select(User)).all():
                plain = self.cipher.decrypt(user.email)
                if FieldCipher.is_encrypted(plain):
                    # Sealed under a different key; leave it alone
                    continue
                lookup = self.cipher.blind_index(plain)
                if FieldCipher.is_encrypted(user.email) and user.email_lookup == lookup:
                    continue
                if not FieldCipher.is_encrypted(user.email):
                    user.email = self.cipher.encrypt(plain)
                user.email_lookup = lookup
                changed += 1
        if changed:
            logger.info("Encrypted %d plain-text email(s)", changed)
        return changed
