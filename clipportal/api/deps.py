"""
clipportal.api.deps — FastAPI dependency injection
===================================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated, Any

from fastapi import Cookie, Depends, Header, Request
from sqlalchemy import Engine

from clipportal.config import ClipPortalConfig, load_config
from clipportal.database.engine import create_db_engine, run_db
from clipportal.errors import Forbidden, Unauthenticated
from clipportal.services.registry import Services, build_services

_WEAK_SECRETS = frozenset({
    "clipportal-dev-secret-change-me",
    "your-secret-key-change-in-production",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

AUTH_COOKIE = "auth"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            "JWT_SECRET is set to a known weak default. "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> ClipPortalConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(get_engine(), get_config(), JWT_SECRET)


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------
def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def get_token(
    auth: Annotated[str | None, Cookie()] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> str | None:
    """Session token from a Bearer header, else the ``auth`` cookie."""
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return auth or None


# ---------------------------------------------------------------------------
# Auth dependencies
# ---------------------------------------------------------------------------
async def get_current_user(
    token: str | None = Depends(get_token),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Resolve the session to a user record.  Raises 401 if invalid."""
    user_id = await run_db(services.auth.validate_session, token)
    user = await run_db(services.users.get_by_id, user_id)
    if user is None:
        raise Unauthenticated("Session expired or invalid")
    return user


async def get_optional_user(
    token: str | None = Depends(get_token),
    services: Services = Depends(get_services),
) -> dict[str, Any] | None:
    if not token:
        return None
    try:
        return await get_current_user(token, services)
    except Unauthenticated:
        return None


async def get_current_admin(user: dict = Depends(get_current_user)) -> dict[str, Any]:
    if not user["is_admin"]:
        raise Forbidden("Admin only")
    return user
