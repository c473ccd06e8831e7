"""
clipportal.errors — Error Taxonomy
===================================

Every failure a store or service can surface to a caller is one of these
classes.  The HTTP layer turns them into the uniform
``{"success": false, "error": "<message>"}`` envelope using
:attr:`ClipPortalError.status_code`.
"""

from __future__ import annotations


class ClipPortalError(Exception):
    """Base class; ``str(exc)`` is the user-facing message."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(ClipPortalError):
    """Malformed or missing fields — user-correctable."""

    status_code = 400
    default_message = "Invalid input"


class Unauthorized(ClipPortalError):
    """Missing or invalid credentials / session."""

    status_code = 401
    default_message = "Unauthorized"


# Session validation and login share one status; the alias keeps call sites
# readable ("raise Unauthenticated" for bad bearer tokens).
Unauthenticated = Unauthorized


class Forbidden(ClipPortalError):
    """Authenticated but not permitted."""

    status_code = 403
    default_message = "Forbidden"

    def __init__(self, message: str | None = None, *, needs_verification: bool = False) -> None:
        super().__init__(message)
        self.needs_verification = needs_verification


class NotFound(ClipPortalError):
    status_code = 404
    default_message = "Not found"


class Conflict(ClipPortalError):
    """Uniqueness violation, duplicate rating, duplicate friend request."""

    status_code = 409
    default_message = "Conflict"


class InvalidToken(ClipPortalError):
    """Magic-link / verification token unknown, already used or expired."""

    status_code = 400
    default_message = "Invalid or expired token"


class RateLimited(ClipPortalError):
    status_code = 429
    default_message = "Too many requests"

    def __init__(self, message: str | None = None, *, retry_after: int = 1) -> None:
        super().__init__(message)
        self.retry_after = max(1, int(retry_after))


class PolicyViolation(ClipPortalError):
    """The action would break an invariant (e.g. removing the last admin)."""

    status_code = 400
    default_message = "Action not allowed"


class Internal(ClipPortalError):
    """Unexpected storage failure."""

    status_code = 500
    default_message = "Internal server error"
