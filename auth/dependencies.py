"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session lives entirely in the `auth` cookie:
  database mode      signed payload, verified with SECRET_KEY and the
                     configured max age; the user must still be in the
                     roster and not banned.
  single-tenant mode the cookie must carry the deployment password (or no
                     password is configured at all).

Roles for authorization checks are read from the reconciled configuration
(the live roster), not from the cookie, so a demotion takes effect on the
next request rather than at cookie expiry.

try_get_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.
require_admin() / require_owner() add HTTP 403 role checks.

Layer rule: auth/dependencies.py may import from fastapi because this module
is part of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import SessionToken
from auth.tokens import AUTH_COOKIE, verify_session, verify_single_tenant_session
from core.config import get_settings
from core.models import ConfigUser


def try_get_session(request: Request) -> SessionToken | None:
    """Return the verified session for this request, or None. Never raises."""
    settings = get_settings()
    cookie = request.cookies.get(AUTH_COOKIE)
    if settings.storage_type == "localstorage":
        return verify_single_tenant_session(cookie, settings.password)

    token = verify_session(cookie, max_age=settings.session_max_age_seconds)
    if token is None:
        return None
    config = request.app.state.config_service.get()
    user = config.find_user(token.username)
    if user is None or user.banned:
        return None
    return token


def get_current_session(request: Request) -> SessionToken:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    session = try_get_session(request)
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return session


def _roster_entry(request: Request, session: SessionToken) -> ConfigUser | None:
    if not session.username:
        return None
    return request.app.state.config_service.get().find_user(session.username)


def require_admin(request: Request) -> SessionToken:
    """Require an owner or admin. Raises HTTP 401 if unauthenticated, 403 otherwise."""
    session = get_current_session(request)
    user = _roster_entry(request, session)
    if user is None or user.role not in ("owner", "admin"):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return session


def require_owner(request: Request) -> SessionToken:
    """Require the site owner. Raises HTTP 401 if unauthenticated, 403 otherwise."""
    session = get_current_session(request)
    user = _roster_entry(request, session)
    if user is None or user.role != "owner":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Owner access required."},
        )
    return session
