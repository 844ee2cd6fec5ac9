"""
Pydantic models for everything that crosses a trust boundary: app manifests
from embedded applications, backend HTTP responses, and WebSocket frames.

Depends on: errors, models
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from vibeagent.errors import ValidationError
from vibeagent.models import ActionType, AppManifest, AppStatus


def _raise_validation(what: str, e: PydanticValidationError) -> None:
    raise ValidationError(f"Invalid {what}: {e.errors(include_url=False)}") from None


# =============================================================================
# App manifest
# =============================================================================

class ManifestInput(BaseModel):
    """Manifest an embedded app passes to init()."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid", populate_by_name=True)
    app_id: str = Field(..., alias="appId", min_length=1, max_length=256)
    name: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = Field(default=None, max_length=2000)
    picture_url: Optional[str] = Field(default=None, alias="pictureUrl", max_length=2048)
    permissions: list[str] = Field(default_factory=list, description="Scopes as 'action:collection'")

    @field_validator("permissions")
    @classmethod
    def _check_scopes(cls, scopes: list[str]) -> list[str]:
        actions = {a.value for a in ActionType}
        cleaned = []
        for scope in scopes:
            action, sep, collection = scope.strip().partition(":")
            if not sep or action not in actions or not collection:
                raise ValueError(f"invalid scope {scope!r}; expected read:<collection> or write:<collection>")
            normalized = f"{action}:{collection}"
            if normalized not in cleaned:
                cleaned.append(normalized)
        return cleaned


def parse_manifest(data: Union[dict, AppManifest]) -> AppManifest:
    if isinstance(data, AppManifest):
        data = {
            "appId": data.app_id,
            "name": data.name,
            "description": data.description,
            "pictureUrl": data.picture_url,
            "permissions": list(data.permissions),
        }
    try:
        m = ManifestInput.model_validate(data)
    except PydanticValidationError as e:
        _raise_validation("app manifest", e)
    return AppManifest(
        app_id=m.app_id,
        name=m.name,
        permissions=m.permissions,
        description=m.description,
        picture_url=m.picture_url,
    )


# =============================================================================
# Backend HTTP responses
# =============================================================================

class ReadResponse(BaseModel):
    model_config = ConfigDict(extra="allow")
    docs: list[Any] = Field(default_factory=list)


class ClaimResponse(BaseModel):
    model_config = ConfigDict(extra="allow")
    token: str = Field(..., min_length=1)


class AppStatusResponse(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    is_registered: bool = Field(default=False, alias="isRegistered")
    manifest: Optional[dict] = None
    grants: Optional[dict[str, str]] = None


def parse_read_response(body: Any) -> list:
    try:
        return ReadResponse.model_validate(body).docs
    except PydanticValidationError as e:
        _raise_validation("read response", e)


def parse_claim_response(body: Any) -> str:
    try:
        return ClaimResponse.model_validate(body).token
    except PydanticValidationError as e:
        _raise_validation("claim response", e)


def parse_app_status(body: Any) -> AppStatus:
    try:
        s = AppStatusResponse.model_validate(body)
    except PydanticValidationError as e:
        _raise_validation("app status response", e)
    return AppStatus(is_registered=s.is_registered, manifest=s.manifest, grants=s.grants)


# =============================================================================
# WebSocket frames (server -> client)
# =============================================================================

class UpdateFrame(BaseModel):
    model_config = ConfigDict(extra="allow")
    type: str
    collection: str
    data: Any = None


class StatusFrame(BaseModel):
    model_config = ConfigDict(extra="allow")
    status: str
    collection: Optional[str] = None
    reason: Optional[str] = None


class ErrorFrame(BaseModel):
    model_config = ConfigDict(extra="allow")
    error: Any


Frame = Union[UpdateFrame, StatusFrame, ErrorFrame]


def parse_frame(message: Any) -> Optional[Frame]:
    """Classify a decoded WebSocket message. Returns None for shapes we do not know."""
    if not isinstance(message, dict):
        return None
    try:
        if message.get("type") == "update":
            return UpdateFrame.model_validate(message)
        if "status" in message:
            return StatusFrame.model_validate(message)
        if "error" in message:
            return ErrorFrame.model_validate(message)
    except PydanticValidationError:
        return None
    return None
