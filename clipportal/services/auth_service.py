"""
clipportal.services.auth_service — Credentials, Sessions & Magic Links
=======================================================================

**Passwords** are hashed with ``bcrypt`` (cost from ``password_hash_rounds``,
10 by default).  The raw password is never stored or logged.

**Sessions** are PyJWT HS256 tokens carrying ``sub`` (user id), ``sid``
(session row id) and ``exp``.  Only the SHA-256 of the token is persisted in
``user_sessions``, so a leaked database cannot be replayed.  A token is
valid while its signature checks out, its row exists, the stored hash
matches and ``expires_at`` is in the future.  Expired rows are purged on
every login.

**Magic links** are random single-use secrets (``verify`` or ``login``),
hashed the same way and valid for ``magic_link_ttl_minutes``.  Consuming
one deletes it and marks the account verified; ``login`` links also open a
session.  Requests are throttled per source IP and per email address.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import quote

import bcrypt
import jwt
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine, delete, select

from clipportal.config import ClipPortalConfig
from clipportal.constants import (
    MAGIC_LINK_PURPOSES,
    MAX_USERNAME_LENGTH,
    MIN_PASSWORD_LENGTH,
    MIN_USERNAME_LENGTH,
    PURPOSE_LOGIN,
    PURPOSE_VERIFY,
    as_utc,
    is_valid_email,
    utcnow,
)
from clipportal.database.engine import get_session
from clipportal.database.models import AuditAction, MagicLinkToken, User, UserSession
from clipportal.errors import (
    Forbidden,
    InvalidInput,
    InvalidToken,
    NotFound,
    RateLimited,
    Unauthenticated,
    Unauthorized,
)
from clipportal.services.throttle import SlidingWindowLimiter

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
# bcrypt only looks at the first 72 bytes; longer inputs are rejected
MAX_PASSWORD_BYTES = 72


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class LoginResult:
    token: str
    session_id: str
    expires_at: datetime
    user: dict[str, Any]


@dataclass(frozen=True, slots=True)
class MagicLinkResult:
    user_id: str
    purpose: str
    login: LoginResult | None = None


class AuthService:
    """Registration, login and token lifecycle.

    Parameters
    ----------
    engine:
        Database engine (``user_sessions`` / ``magic_link_tokens``).
    users:
        :class:`~clipportal.services.user_service.UserDirectory`.
    cfg:
        Loaded :class:`~clipportal.config.ClipPortalConfig`.
    jwt_secret:
        HS256 signing key, validated at API startup.
    mailer:
        :class:`~clipportal.services.email_service.Mailer` (or any object
        with ``send_link(to, username, purpose, link)``).
    audit:
        Optional :class:`~clipportal.services.audit_service.AuditLog`.
    """

    def __init__(
        self,
        engine: Engine,
        users,
        cfg: ClipPortalConfig,
        jwt_secret: str,
        mailer=None,
        audit=None,
    ) -> None:
        self.engine = engine
        self.users = users
        self.cfg = cfg
        self.jwt_secret = jwt_secret
        self.mailer = mailer
        self.audit = audit
        self.session_ttl = timedelta(days=cfg.session_ttl_days)
        self.link_ttl = timedelta(minutes=cfg.magic_link_ttl_minutes)
        self.ip_limiter = SlidingWindowLimiter(cfg.magic_link_ip_limit, cfg.magic_link_window_seconds)
        self.email_limiter = SlidingWindowLimiter(cfg.magic_link_email_limit, cfg.magic_link_window_seconds)

    def _audit(self, user_id: str | None, action: AuditAction, details: dict | None = None,
               ip: str | None = None, user_agent: str | None = None) -> None:
        if self.audit:
            self.audit.record(user_id, action, details, ip, user_agent)

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------
    def hash_password(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.cfg.password_hash_rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("ascii")

    @staticmethod
    def check_password(password: str | None, password_hash: str | None) -> bool:
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("ascii"))
        except ValueError:
            return False

    @staticmethod
    def _validate_password(password: str) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidInput(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise InvalidInput(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register(
        self,
        username: str | None,
        email: str | None,
        password: str | None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        """Create an account and return its id.

        The first account in an empty directory becomes admin while
        ``bootstrap_first_admin`` is enabled.  With
        ``require_email_verification`` on, the account starts unverified and
        a verify link is mailed.
        """
        username = (username or "").strip()
        email = (email or "").strip().lower()
        password = password or ""
        if not username or not email or not password:
            raise InvalidInput("Username, email and password are required")
        if len(username) < MIN_USERNAME_LENGTH or len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidInput(
                f"Username must be {MIN_USERNAME_LENGTH}+ chars and password {MIN_PASSWORD_LENGTH}+ chars"
            )
        if len(username) > MAX_USERNAME_LENGTH:
            raise InvalidInput(f"Username must be at most {MAX_USERNAME_LENGTH} characters")
        if not is_valid_email(email):
            raise InvalidInput("Please enter a valid email address")
        self._validate_password(password)

        is_admin = self.cfg.bootstrap_first_admin and self.users.count() == 0
        verified = not self.cfg.require_email_verification
        record = self.users.create(
            username,
            email,
            self.hash_password(password),
            is_verified=verified,
            is_admin=is_admin,
        )
        if is_admin:
            logger.info("First account %s bootstrapped as admin", record["id"])
        self._audit(record["id"], AuditAction.USER_REGISTERED, {"username": username}, ip, user_agent)

        if not verified:
            token = self._issue_link(record["id"], PURPOSE_VERIFY)
            self._deliver(record, PURPOSE_VERIFY, token)
        return record["id"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def login(
        self,
        username: str | None,
        password: str | None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        user = self.users.get_by_username(username or "")
        if user is None or not self.check_password(password, user["password_hash"]):
            raise Unauthorized("Invalid credentials")
        if not user["is_verified"]:
            raise Forbidden("Email not verified. Please check your inbox.", needs_verification=True)
        result = self._open_session(user, ip, user_agent)
        self._audit(user["id"], AuditAction.USER_LOGIN, {"username": user["username"]}, ip, user_agent)
        return result

    def _open_session(self, user: dict[str, Any], ip: str | None, user_agent: str | None) -> LoginResult:
        self.purge_expired_sessions()
        session_id = str(uuid.uuid4())
        expires_at = utcnow() + self.session_ttl
        token = jwt.encode(
            {"sub": user["id"], "sid": session_id, "exp": expires_at},
            self.jwt_secret,
            algorithm=JWT_ALGORITHM,
        )
        with get_session(self.engine) as session:
            session.add(UserSession(
                id=session_id,
                user_id=user["id"],
                token_hash=hash_token(token),
                expires_at=expires_at,
                ip_address=ip,
                user_agent=(user_agent or "")[:255] or None,
            ))
        return LoginResult(token=token, session_id=session_id, expires_at=expires_at, user=user)

    def _claims(self, token: str, *, verify_exp: bool = True) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[JWT_ALGORITHM],
                options={"verify_exp": verify_exp, "require": ["sub", "sid", "exp"]},
            )
        except InvalidTokenError:
            raise Unauthenticated("Invalid session") from None

    def validate_session(self, token: str | None) -> str:
        """Return the user id owning *token*.

        Bad signatures, unknown or revoked sessions and expired sessions all
        raise :class:`Unauthenticated`; an expired row is deleted on sight.
        """
        if not token:
            raise Unauthenticated("Not authenticated")
        claims = self._claims(token)
        now = utcnow()
        valid = False
        with get_session(self.engine) as session:
            row = session.get(UserSession, claims["sid"])
            if row is None or row.user_id != claims["sub"]:
                pass
            elif not hmac.compare_digest(row.token_hash, hash_token(token)):
                pass
            elif as_utc(row.expires_at) <= now:
                session.delete(row)
            else:
                row.last_used_at = now
                valid = True
        if not valid:
            raise Unauthenticated("Session expired or invalid")
        return claims["sub"]

    def session_id(self, token: str | None) -> str | None:
        """The ``sid`` claim of a well-formed token, ignoring expiry."""
        if not token:
            return None
        try:
            return self._claims(token, verify_exp=False)["sid"]
        except Unauthenticated:
            return None

    def logout(self, token: str | None, ip: str | None = None, user_agent: str | None = None) -> None:
        """End the session behind *token*.  Always succeeds."""
        sid = self.session_id(token)
        if sid is None:
            return
        removed = None
        with get_session(self.engine) as session:
            row = session.get(UserSession, sid)
            if row is not None and hmac.compare_digest(row.token_hash, hash_token(token)):
                removed = row.user_id
                session.delete(row)
        if removed:
            self._audit(removed, AuditAction.USER_LOGOUT, None, ip, user_agent)

    def revoke_all(self, user_id: str, except_session_id: str | None = None) -> int:
        stmt = delete(UserSession).where(UserSession.user_id == user_id)
        if except_session_id:
            stmt = stmt.where(UserSession.id != except_session_id)
        with get_session(self.engine) as session:
            return session.execute(stmt).rowcount or 0

    def purge_expired_sessions(self) -> int:
        with get_session(self.engine) as session:
            result = session.execute(delete(UserSession).where(UserSession.expires_at <= utcnow()))
            purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d expired session(s)", purged)
        return purged

    def change_password(
        self,
        user_id: str,
        current_password: str | None,
        new_password: str | None,
        current_token: str | None = None,
    ) -> None:
        """Swap the password and sign out every other session."""
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        if not self.check_password(current_password, user["password_hash"]):
            raise Unauthorized("Current password is incorrect")
        new_password = new_password or ""
        self._validate_password(new_password)
        self.users.update(user_id, password_hash=self.hash_password(new_password))
        revoked = self.revoke_all(user_id, except_session_id=self.session_id(current_token))
        logger.info("Password changed for %s; revoked %d other session(s)", user_id, revoked)
        self._audit(user_id, AuditAction.PASSWORD_CHANGED)

    # ------------------------------------------------------------------
    # Magic links
    # ------------------------------------------------------------------
    def _throttle(self, ip: str | None, key: str) -> None:
        ip_key = ip or "unknown"
        for limiter, k in ((self.ip_limiter, ip_key), (self.email_limiter, key)):
            allowed, info = limiter.check(k)
            if not allowed:
                logger.warning("Magic-link throttle hit (%d per %ds)", limiter.max_events, limiter.window_seconds)
                raise RateLimited(
                    "Too many requests. Please try again later.", retry_after=info["reset"]
                )
        self.ip_limiter.record(ip_key)
        self.email_limiter.record(key)

    def _issue_link(self, user_id: str, purpose: str) -> str:
        """Store a fresh single-use token and return its raw value."""
        raw = secrets.token_urlsafe(32)
        now = utcnow()
        with get_session(self.engine) as session:
            session.execute(delete(MagicLinkToken).where(MagicLinkToken.expires_at <= now))
            # Only the newest link of each purpose stays usable
            session.execute(
                delete(MagicLinkToken).where(
                    MagicLinkToken.user_id == user_id, MagicLinkToken.purpose == purpose
                )
            )
            session.add(MagicLinkToken(
                user_id=user_id,
                purpose=purpose,
                token_hash=hash_token(raw),
                expires_at=now + self.link_ttl,
            ))
        return raw

    def _link_url(self, purpose: str, token: str) -> str:
        base = self.cfg.site_base_url.rstrip("/")
        path = "/api/auth/verify" if purpose == PURPOSE_VERIFY else "/api/auth/magic"
        return f"{base}{path}?token={quote(token)}"

    def _deliver(self, user: dict[str, Any], purpose: str, token: str) -> None:
        link = self._link_url(purpose, token)
        if self.mailer is None:
            logger.info("No mailer configured; %s link for %s: %s", purpose, user["username"], link)
            return
        self.mailer.send_link(user["email"], user["username"], purpose, link)

    def request_magic_link(self, email: str | None, purpose: str = PURPOSE_LOGIN, ip: str | None = None) -> None:
        """Mail a verify or sign-in link.

        Unknown addresses succeed silently so the endpoint cannot be used to
        probe for accounts.  Raises :class:`RateLimited` past 10 requests
        per IP or 3 per email address in the throttle window (defaults).
        """
        if purpose not in MAGIC_LINK_PURPOSES:
            raise InvalidInput("Unknown link purpose")
        email = (email or "").strip().lower()
        if not is_valid_email(email):
            raise InvalidInput("Please enter a valid email address")
        self._throttle(ip, email)

        user = self.users.get_by_email(email)
        if user is None:
            logger.debug("Magic link requested for unknown address")
            return
        if purpose == PURPOSE_VERIFY and user["is_verified"]:
            return
        token = self._issue_link(user["id"], purpose)
        self._deliver(user, purpose, token)
        self._audit(user["id"], AuditAction.MAGIC_LINK_REQUESTED, {"purpose": purpose}, ip)

    def resend_verification(self, username_or_email: str | None, ip: str | None = None) -> str:
        """Re-issue a verify link; returns a user-facing status message."""
        value = (username_or_email or "").strip()
        if not value:
            raise InvalidInput("Username or email is required")
        self._throttle(ip, value.lower())
        user = self.users.get_by_username_or_email(value)
        if user is not None and user["is_verified"]:
            return "Already verified"
        if user is not None:
            token = self._issue_link(user["id"], PURPOSE_VERIFY)
            self._deliver(user, PURPOSE_VERIFY, token)
        return "Verification email sent"

    def consume_magic_link(
        self,
        token: str | None,
        ip: str | None = None,
        user_agent: str | None = None,
        *,
        purpose: str | None = None,
    ) -> MagicLinkResult:
        """Spend a link token.

        Unknown, already-used and expired tokens raise
        :class:`InvalidToken`.  When *purpose* is given, a token issued for
        another purpose is rejected without being spent.
        """
        token = (token or "").strip()
        if not token:
            raise InvalidToken("Missing token")
        now = utcnow()
        user_id = link_purpose = None
        with get_session(self.engine) as session:
            row = session.scalar(
                select(MagicLinkToken).where(MagicLinkToken.token_hash == hash_token(token))
            )
            if row is not None and (purpose is None or row.purpose == purpose):
                spent = session.execute(
                    delete(MagicLinkToken).where(MagicLinkToken.id == row.id)
                ).rowcount
                # rowcount 0 → a concurrent consumer won the race
                if spent and as_utc(row.expires_at) > now:
                    user = session.get(User, row.user_id)
                    if user is not None:
                        user.is_verified = True
                        user_id, link_purpose = user.id, row.purpose
        if user_id is None:
            raise InvalidToken("Invalid or expired token")

        if link_purpose == PURPOSE_LOGIN:
            user = self.users.get_by_id(user_id)
            login = self._open_session(user, ip, user_agent)
            self._audit(user_id, AuditAction.MAGIC_LINK_LOGIN, None, ip, user_agent)
            return MagicLinkResult(user_id=user_id, purpose=link_purpose, login=login)

        self._audit(user_id, AuditAction.USER_VERIFIED, None, ip, user_agent)
        return MagicLinkResult(user_id=user_id, purpose=link_purpose)

    def verify(self, token: str | None, ip: str | None = None, user_agent: str | None = None) -> str:
        """Consume a ``verify`` token and return the verified user's id."""
        return self.consume_magic_link(token, ip, user_agent, purpose=PURPOSE_VERIFY).user_id
