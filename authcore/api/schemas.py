from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.service.validation import validate_email

# Maximum nested profile depth accepted from clients
MAX_JSON_DEPTH = 20

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "email_not_verified",
    "token_invalid",
    "token_expired",
    "token_reused",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)
    profile: Optional[dict] = None
    auto_verify: bool = False

    model_config = ConfigDict(extra="forbid")

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("profile")
    @classmethod
    def _validate_profile(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None:
            _validate_json_depth(value)
        return value


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)

    model_config = ConfigDict(extra="forbid")


class TokenRequest(BaseModel):
    token: str = Field(..., max_length=4096)


class PasswordResetConfirmRequest(BaseModel):
    token: str = Field(..., max_length=4096)
    password: str = Field(..., max_length=1024)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)


class ProfileUpdateRequest(BaseModel):
    profile: dict

    @field_validator("profile")
    @classmethod
    def _validate_profile(cls, value: dict) -> dict:
        _validate_json_depth(value)
        return value
