"""
api/routes/v1/admin.py -- Configuration and user administration.

Routes:
  GET    /api/v1/admin/config                  -- full reconciled configuration (admin)
  POST   /api/v1/admin/config-file             -- upload + reconcile a config file (owner)
  POST   /api/v1/admin/reset                   -- rebuild from the stored file (owner)
  PUT    /api/v1/admin/subscription            -- set subscription URL (owner)
  POST   /api/v1/admin/subscription/refresh    -- fetch + reconcile subscription (owner)
  PATCH  /api/v1/admin/users/{username}        -- role / banned / grants (admin)
  DELETE /api/v1/admin/users/{username}        -- delete account and all its data (admin)

Permission rules for user edits:
  - The owner account can never be edited or deleted through the API.
  - Admins may only act on plain users; the owner may act on admins too.
  - Role changes (admin <-> user) are owner-only.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import ConfigFileUpload, ConfigSummaryResponse, SubscriptionUpdate, UserConfigPatch
from auth.dependencies import require_admin, require_owner
from auth.models import SessionToken
from auth.store import UserStore
from cache.store import ConfigService
from core.models import AdminConfig, ConfigUser

logger = logging.getLogger("tvcore.api.admin")

router = APIRouter()


def _summary(config: AdminConfig) -> ConfigSummaryResponse:
    return ConfigSummaryResponse(
        sources=len(config.sources),
        custom_categories=len(config.custom_categories),
        lives=len(config.lives),
        users=len(config.users),
    )


def _editable_target(config: AdminConfig, actor: SessionToken, username: str) -> ConfigUser:
    """Return the roster entry `actor` may modify, or raise 404/403."""
    target = config.find_user(username)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    actor_entry = config.find_user(actor.username or "")
    actor_role = actor_entry.role if actor_entry else "user"
    if target.role == "owner" or (target.role == "admin" and actor_role != "owner"):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "You cannot modify this user."},
        )
    return target


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@router.get("/admin/config")
def get_config(request: Request, session: SessionToken = Depends(require_admin)) -> dict:
    config_service: ConfigService = request.app.state.config_service
    return config_service.get().to_dict()


@router.post("/admin/config-file", response_model=ConfigSummaryResponse)
def upload_config_file(
    request: Request,
    body: ConfigFileUpload,
    session: SessionToken = Depends(require_owner),
) -> ConfigSummaryResponse:
    """Store a new file-declared document and reconcile it into the configuration."""
    config_service: ConfigService = request.app.state.config_service
    config = config_service.apply_config_file(body.config_file, overwrite=body.overwrite)
    logger.info("Configuration file uploaded by %r", session.username)
    return _summary(config)


@router.post("/admin/reset", response_model=ConfigSummaryResponse)
def reset_config(request: Request, session: SessionToken = Depends(require_owner)) -> ConfigSummaryResponse:
    config_service: ConfigService = request.app.state.config_service
    config = config_service.reset()
    logger.warning("Configuration reset by %r", session.username)
    return _summary(config)


@router.put("/admin/subscription")
def update_subscription(
    request: Request,
    body: SubscriptionUpdate,
    session: SessionToken = Depends(require_owner),
) -> dict:
    config_service: ConfigService = request.app.state.config_service

    def apply(config: AdminConfig) -> None:
        config.subscription.url = body.url
        config.subscription.auto_update = body.auto_update

    config_service.update(apply)
    return {"ok": True}


@router.post("/admin/subscription/refresh", response_model=ConfigSummaryResponse)
def refresh_subscription(
    request: Request,
    session: SessionToken = Depends(require_owner),
) -> ConfigSummaryResponse:
    config_service: ConfigService = request.app.state.config_service
    config = config_service.refresh_subscription()
    if config is None:
        raise HTTPException(
            status_code=502,
            detail={"code": "subscription_unavailable", "message": "Subscription could not be fetched."},
        )
    return _summary(config)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.patch("/admin/users/{username}")
def update_user(
    request: Request,
    username: str,
    body: UserConfigPatch,
    session: SessionToken = Depends(require_admin),
) -> dict:
    """Edit a roster entry. Configuration fields are saved before the role change
    so the roster rebuild that follows carries them over."""
    config_service: ConfigService = request.app.state.config_service
    store: UserStore = request.app.state.user_store

    role_change = False

    def apply(config: AdminConfig) -> None:
        nonlocal role_change
        target = _editable_target(config, session, username)
        role_change = body.role is not None and body.role != target.role
        if role_change:
            actor = config.find_user(session.username or "")
            if actor is None or actor.role != "owner":
                raise HTTPException(
                    status_code=403,
                    detail={"code": "forbidden", "message": "Only the owner can change roles."},
                )
        if body.banned is not None:
            target.banned = body.banned
        if body.enabled_apis is not None:
            target.enabled_apis = body.enabled_apis
        if body.tags is not None:
            target.tags = body.tags

    config_service.update(apply)

    if role_change:
        store.set_role(username, body.role)
        config_service.get(force_reload=True)

    updated = config_service.get().find_user(username)
    return updated.to_dict() if updated else {}


@router.delete("/admin/users/{username}", status_code=204)
def delete_user(
    request: Request,
    username: str,
    session: SessionToken = Depends(require_admin),
) -> Response:
    """Delete the account and every per-user record in one transaction."""
    config_service: ConfigService = request.app.state.config_service
    store: UserStore = request.app.state.user_store

    _editable_target(config_service.get(), session, username)
    store.delete_user(username)
    config_service.get(force_reload=True)
    logger.info("User %r deleted by %r", username, session.username)
    return Response(status_code=204)
