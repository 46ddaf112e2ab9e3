"""
api/routes/v1/sources.py -- Content sources visible to the current session.

Routes:
  GET /api/v1/sources  -- enabled sources filtered by the user's grants
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import SourceResponse
from auth.dependencies import get_current_session
from auth.models import SessionToken
from cache.store import ConfigService

router = APIRouter()


@router.get("/sources", response_model=list[SourceResponse])
def list_sources(request: Request, session: SessionToken = Depends(get_current_session)) -> list[SourceResponse]:
    """Explicit grants win over tag grants; with neither, every enabled source is visible."""
    config_service: ConfigService = request.app.state.config_service
    return [SourceResponse.from_source(s) for s in config_service.visible_sources(session.username)]
