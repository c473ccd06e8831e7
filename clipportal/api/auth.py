"""
clipportal.api.auth — Registration, sessions & magic links
===========================================================

Session tokens travel in the httpOnly ``auth`` cookie (``SameSite=Lax``);
API clients may send ``Authorization: Bearer <token>`` instead.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from pydantic import AliasChoices, BaseModel, Field

from clipportal.api.deps import (
    AUTH_COOKIE,
    client_ip,
    get_current_user,
    get_optional_user,
    get_services,
    get_token,
    user_agent,
)
from clipportal.constants import PURPOSE_LOGIN
from clipportal.database.engine import run_db
from clipportal.services.auth_service import LoginResult
from clipportal.services.registry import Services
from clipportal.services.user_service import public_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RegisterBody(BaseModel):
    username: str | None = None
    email: str | None = None
    password: str | None = None


class LoginBody(BaseModel):
    username: str | None = None
    password: str | None = None


class ResendBody(BaseModel):
    username_or_email: str | None = Field(
        None, validation_alias=AliasChoices("username_or_email", "usernameOrEmail")
    )


class MagicLinkBody(BaseModel):
    email: str | None = None


class ChangePasswordBody(BaseModel):
    current_password: str | None = None
    new_password: str | None = None


def _set_session_cookie(response: Response, login: LoginResult, services: Services) -> None:
    response.set_cookie(
        AUTH_COOKIE,
        login.token,
        max_age=services.cfg.session_ttl_days * 24 * 3600,
        httponly=True,
        samesite="lax",
    )


# ---------------------------------------------------------------------------
# Account lifecycle
# ---------------------------------------------------------------------------
@router.post("/register")
async def register(body: RegisterBody, request: Request, services: Services = Depends(get_services)):
    await run_db(
        services.auth.register,
        body.username,
        body.email,
        body.password,
        client_ip(request),
        user_agent(request),
    )
    if services.cfg.require_email_verification:
        message = "Account created. Please check your email to verify your account."
    else:
        message = "Account created. You can now log in."
    return {"success": True, "message": message}


@router.post("/login")
async def login(
    body: LoginBody,
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
):
    result = await run_db(
        services.auth.login, body.username, body.password, client_ip(request), user_agent(request)
    )
    _set_session_cookie(response, result, services)
    return {"success": True, "user": public_user(result.user), "token": result.token}


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    token: str | None = Depends(get_token),
    services: Services = Depends(get_services),
):
    await run_db(services.auth.logout, token, client_ip(request), user_agent(request))
    response.delete_cookie(AUTH_COOKIE)
    return {"success": True}


@router.get("/me")
async def me(
    user: dict | None = Depends(get_optional_user),
    services: Services = Depends(get_services),
):
    """The signed-in user, or ``null`` when there is no valid session."""
    if user is None:
        return {"success": True, "user": None}
    incoming = await run_db(services.friends.list_incoming_pending, user["id"])
    return {
        "success": True,
        "user": {
            **public_user(user),
            "is_admin": user["is_admin"],
            "is_verified": user["is_verified"],
            "incoming_requests": len(incoming),
        },
    }


@router.post("/change-password")
async def change_password(
    body: ChangePasswordBody,
    user: dict = Depends(get_current_user),
    token: str | None = Depends(get_token),
    services: Services = Depends(get_services),
):
    await run_db(
        services.auth.change_password, user["id"], body.current_password, body.new_password, token
    )
    return {"success": True, "message": "Password updated. Other sessions were signed out."}


# ---------------------------------------------------------------------------
# Verification & magic links
# ---------------------------------------------------------------------------
@router.get("/verify")
async def verify(request: Request, token: str = "", services: Services = Depends(get_services)):
    await run_db(services.auth.verify, token, client_ip(request), user_agent(request))
    return {"success": True, "message": "Email verified. You can now log in."}


@router.post("/resend-verification")
async def resend_verification(
    body: ResendBody, request: Request, services: Services = Depends(get_services)
):
    message = await run_db(services.auth.resend_verification, body.username_or_email, client_ip(request))
    return {"success": True, "message": message}


@router.post("/request-magic-link")
async def request_magic_link(
    body: MagicLinkBody, request: Request, services: Services = Depends(get_services)
):
    """Always answers the same way whether or not the address is registered."""
    await run_db(services.auth.request_magic_link, body.email, PURPOSE_LOGIN, client_ip(request))
    return {"success": True, "message": "If that address is registered, a sign-in link is on its way."}


@router.get("/magic")
async def magic(
    request: Request,
    response: Response,
    token: str = "",
    services: Services = Depends(get_services),
):
    result = await run_db(
        services.auth.consume_magic_link, token, client_ip(request), user_agent(request)
    )
    if result.login is None:
        return {"success": True, "message": "Email verified. You can now log in.", "user": None}
    _set_session_cookie(response, result.login, services)
    return {"success": True, "user": public_user(result.login.user), "token": result.login.token}
