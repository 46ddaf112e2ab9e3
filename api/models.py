"""
API request and response models for tvcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Length bounds on usernames and passwords are enforced by the UserStore
(ValidationError -> 400), not here, so the CLI-free store API and the HTTP API
share one rule.
"""

from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from core.models import Source

# Usernames are trimmed; passwords are taken exactly as typed.
_Username = Annotated[str, StringConstraints(strip_whitespace=True, max_length=255)]

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/login.

    username is omitted in single-tenant deployments, where only the shared
    password is checked.
    """

    username: Optional[_Username] = None
    password: str = Field(max_length=255)


class RegisterRequest(BaseModel):
    username: _Username
    password: str = Field(max_length=255)


class ChangePasswordRequest(BaseModel):
    new_password: str = Field(max_length=255)


class ConfigFileUpload(BaseModel):
    """Request body for POST /api/v1/admin/config-file."""

    config_file: str = Field(max_length=2 * 1024 * 1024)
    overwrite: bool = True


class SubscriptionUpdate(BaseModel):
    url: str = Field(default="", max_length=2048)
    auto_update: bool = False


class UserConfigPatch(BaseModel):
    """Admin edits to one roster entry. Omitted fields are left unchanged."""

    role: Optional[Literal["admin", "user"]] = None
    banned: Optional[bool] = None
    enabled_apis: Optional[list[str]] = None
    tags: Optional[list[str]] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    ok: bool = True
    username: Optional[str] = None
    role: str = "user"


class MeResponse(BaseModel):
    username: Optional[str]
    role: str


class SourceResponse(BaseModel):
    """One visible content source. Provenance and disabled flags are admin-only detail."""

    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    display_name: Optional[str] = None
    api: str
    detail: Optional[str] = None

    @classmethod
    def from_source(cls, source: Source) -> "SourceResponse":
        return cls(
            key=source.key,
            name=source.name,
            display_name=source.display_name,
            api=source.api,
            detail=source.detail,
        )


class ConfigSummaryResponse(BaseModel):
    ok: bool = True
    sources: int
    custom_categories: int
    lives: int
    users: int


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
