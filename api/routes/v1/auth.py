"""
api/routes/v1/auth.py -- Login, registration and session endpoints.

Routes:
  POST /api/v1/login            -- password login; sets the auth cookie
  POST /api/v1/register         -- self-registration; logs the new user in
  POST /api/v1/logout           -- clears the cookie
  POST /api/v1/change-password  -- requires a database-mode session
  GET  /api/v1/me               -- current session identity

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  Wrong username, wrong password, and banned account all return the same
  401 body.
  Cache-Control: no-store on responses that set a session cookie.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import ChangePasswordRequest, LoginRequest, LoginResponse, MeResponse, RegisterRequest
from auth.dependencies import get_current_session
from auth.models import SessionToken
from auth.store import UserStore
from auth.tokens import (
    authenticate_user,
    clear_auth_cookie,
    issue_session,
    issue_single_tenant_session,
    passwords_match,
    set_auth_cookie,
)
from cache.store import ConfigService
from core.config import get_settings
from core.errors import AuthenticationError, ValidationError

logger = logging.getLogger("tvcore.api.auth")

router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _session_response(payload: LoginResponse, cookie_value: str) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=payload.model_dump())
    set_auth_cookie(resp, cookie_value)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate and set the session cookie.

    Single-tenant mode compares against the deployment password; with no
    password configured the site is open and any stale cookie is cleared.
    Database mode verifies against the credential store, then checks the
    banned flag in a freshly reloaded configuration.
    """
    settings = get_settings()

    if settings.storage_type == "localstorage":
        if not settings.password:
            resp = JSONResponse(content=LoginResponse().model_dump())
            clear_auth_cookie(resp)
            return resp
        if not passwords_match(body.password, settings.password):
            raise AuthenticationError("Incorrect password.")
        return _session_response(LoginResponse(), issue_single_tenant_session(body.password))

    if not body.username:
        raise ValidationError("Username is required.")
    if not body.password:
        raise ValidationError("Password is required.")

    store: UserStore = request.app.state.user_store
    config_service: ConfigService = request.app.state.config_service
    role = authenticate_user(store, config_service.get(force_reload=True), body.username, body.password)
    logger.info("User %r logged in (role=%s)", body.username, role)
    return _session_response(
        LoginResponse(username=body.username, role=role),
        issue_session(body.username, role),
    )


@router.post("/register", response_model=LoginResponse)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and log it in. Duplicate usernames return 409."""
    settings = get_settings()
    if settings.storage_type == "localstorage":
        raise ValidationError("Registration is not available in single-tenant mode.")
    if not settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Registration is disabled."},
        )

    store: UserStore = request.app.state.user_store
    store.register_user(body.username, body.password)
    # The roster changed; the next configuration read rebuilds it.
    request.app.state.config_service.invalidate()
    return _session_response(
        LoginResponse(username=body.username, role="user"),
        issue_session(body.username, "user"),
    )


@router.post("/logout")
async def logout() -> JSONResponse:
    """Clear the session cookie."""
    resp = JSONResponse(content={"ok": True})
    clear_auth_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/me", response_model=MeResponse)
def me(session: SessionToken = Depends(get_current_session)) -> MeResponse:
    return MeResponse(username=session.username, role=session.role)


@router.post("/change-password")
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    session: SessionToken = Depends(get_current_session),
) -> dict:
    """Replace the current user's password."""
    if not session.username:
        raise ValidationError("Password changes are not available in single-tenant mode.")
    store: UserStore = request.app.state.user_store
    if not store.change_password(session.username, body.new_password):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return {"ok": True}
