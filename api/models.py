"""
API request and response models for the SSO REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. User bodies are not modelled here:
they are produced by auth.codec.identity_codec so the HTTP representation and
the decoder stay in one place.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import StandardRoleKind

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RoleSelection(BaseModel):
    """Body for POST /api/v1/set-role."""

    model_config = ConfigDict(str_strip_whitespace=True)

    type: StandardRoleKind
    scope: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
