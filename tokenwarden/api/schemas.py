from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Usernames and secrets are bounded to keep hashing work per request bounded
MAX_USERNAME_LENGTH = 50
MAX_SECRET_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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


class TokenResponse(BaseModel):
    token: str


class RecoveryRequest(BaseModel):
    """Body of ``POST /auth/recovery``.

    ``recoveryKey`` carries whichever secret the user has: the password, the
    recovery key, or an unused registration code.
    """

    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(..., min_length=1, max_length=MAX_USERNAME_LENGTH)
    recovery_key: str = Field(
        ..., alias="recoveryKey", min_length=1, max_length=MAX_SECRET_LENGTH
    )


class VerifyRequest(BaseModel):
    verification: str = Field(..., min_length=1, max_length=MAX_SECRET_LENGTH)


class VerifyResponse(BaseModel):
    status: str = "verified"
