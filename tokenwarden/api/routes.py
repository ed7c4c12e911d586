from __future__ import annotations

import base64
import binascii
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Header, Request, Response

from tokenwarden.api.schemas import (
    RecoveryRequest,
    TokenResponse,
    VerifyRequest,
    VerifyResponse,
)
from tokenwarden.service.errors import (
    AuthenticationError,
    NotAuthenticatedError,
    RateLimitedError,
)
from tokenwarden.service.runtime import check_rate_limit, get_runtime
from tokenwarden.storage.models import Account

router = APIRouter()

_BASIC_CHALLENGE = {"WWW-Authenticate": "Basic"}
_BEARER_CHALLENGE = {"WWW-Authenticate": "Bearer"}


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _parse_basic_credentials(authorization: Optional[str]) -> Tuple[str, str]:
    """Decode ``Authorization: Basic base64(username:password)``."""
    scheme, _, encoded = (authorization or "").partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        raise AuthenticationError(
            "basic credentials required", headers=_BASIC_CHALLENGE
        )
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise AuthenticationError(
            "malformed basic credentials", headers=_BASIC_CHALLENGE
        )
    username, sep, password = decoded.partition(":")
    if not sep or not username:
        raise AuthenticationError(
            "malformed basic credentials", headers=_BASIC_CHALLENGE
        )
    return username, password


def _parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    scheme, _, value = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def _enforce_rate_limit(key: str, limit: int, window_seconds: int) -> None:
    runtime = get_runtime()
    allowed = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        raise RateLimitedError("rate limit exceeded", detail={"retry_window": window_seconds})


async def get_bearer_account(authorization: Optional[str] = Header(None)) -> Account:
    runtime = get_runtime()
    value = _parse_bearer_token(authorization)
    if value is None:
        raise NotAuthenticatedError(
            "bearer token required", headers=_BEARER_CHALLENGE
        )
    return runtime.auth.authenticate_bearer(value)


@router.post("/auth/login", response_model=TokenResponse, tags=["auth"])
async def login(request: Request, authorization: Optional[str] = Header(None)):
    """Exchange HTTP Basic credentials for the account's bearer token.

    A token that already exists is returned unchanged, so several devices can
    share one login.

    Raises:
        401: If credentials are missing or wrong
        403: If the account is banned
        429: If the client exceeded the login rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"login:{_client_key(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    username, password = _parse_basic_credentials(authorization)
    token = await runtime.auth.login(username, password)
    return TokenResponse(token=token.value)


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(account: Account = Depends(get_bearer_account)):
    """Revoke the caller's token; 409 if it was already gone."""
    runtime = get_runtime()
    runtime.auth.logout(account)
    return Response(status_code=204)


@router.post("/auth/recovery", response_model=TokenResponse, tags=["auth"])
async def recovery(body: RecoveryRequest, request: Request):
    """Recover access with a password, recovery key, or unused registration code.

    Raises:
        400: Unknown username, no match, or a registration code already used
        403: Too many failed attempts on this account
        429: If the client exceeded the recovery rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"recovery:{_client_key(request)}",
        runtime.settings.recovery_rate_limit_per_minute,
        60,
    )
    token = await runtime.auth.recover(body.username, body.recovery_key)
    return TokenResponse(token=token.value)


@router.post("/user/verify", response_model=VerifyResponse, tags=["user"])
async def verify_user(body: VerifyRequest, authorization: Optional[str] = Header(None)):
    """Attach a pool registration code to the Basic-authenticated account."""
    runtime = get_runtime()
    username, password = _parse_basic_credentials(authorization)
    account = await runtime.auth.verify_primary_credential(username, password)
    runtime.registration.verify(account, body.verification)
    return VerifyResponse()
