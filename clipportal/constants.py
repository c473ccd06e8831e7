"""
clipportal.constants — Shared Constants & Helpers
==================================================

Single source of truth for validation limits, enum-like string sets and the
UTC time helpers.  Import from here instead of duplicating in services and
routes.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Account rules
# ---------------------------------------------------------------------------
MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 32
MIN_PASSWORD_LENGTH = 6

_EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(email: str | None) -> bool:
    """Basic ``local@domain.tld`` shape check."""
    return bool(_EMAIL_REGEX.match(str(email or "").lower()))


# ---------------------------------------------------------------------------
# Profile limits
# ---------------------------------------------------------------------------
MAX_DISPLAY_NAME_LENGTH = 50
MAX_BIO_LENGTH = 500
MAX_SOCIAL_LENGTH = 200
SOCIAL_KEYS: tuple[str, ...] = ("steam", "twitter", "youtube", "other")
THEME_COLOR_REGEX = re.compile(r"^#[0-9a-fA-F]{6}$")

# ---------------------------------------------------------------------------
# Clips
# ---------------------------------------------------------------------------
DEFAULT_CATEGORY = "Other"
CLIP_SORT_KEYS: frozenset[str] = frozenset({"newest", "oldest", "rating", "popular"})
CLIP_STATUS_FILTERS: frozenset[str] = frozenset({"pending", "approved", "all"})
DURATION_TOLERANCE_SECONDS = 0.05
MIN_RATING = 1
MAX_RATING = 5

VIDEO_PLACEHOLDER = "/images/video-placeholder.svg"
TWITCH_PLACEHOLDER = "/images/twitch-placeholder.svg"

# ---------------------------------------------------------------------------
# Messaging / comments
# ---------------------------------------------------------------------------
DEFAULT_CONVERSATION_LIMIT = 50
MAX_CONVERSATION_LIMIT = 200
MAX_COMMENTS_RETURNED = 200
MAX_TEXT_LENGTH = 2000

# ---------------------------------------------------------------------------
# Magic links
# ---------------------------------------------------------------------------
PURPOSE_VERIFY = "verify"
PURPOSE_LOGIN = "login"
MAGIC_LINK_PURPOSES: frozenset[str] = frozenset({PURPOSE_VERIFY, PURPOSE_LOGIN})


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def utcnow() -> datetime:
    """Timezone-aware "now" used for every persisted timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def seconds_to_timestamp(total_seconds: float | None) -> str:
    """Format a duration as ``m:ss`` (``31.4`` → ``"0:31"``)."""
    sec = max(0, round(total_seconds or 0))
    return f"{sec // 60}:{sec % 60:02d}"
