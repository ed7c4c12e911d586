from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` from the envelope vocabulary:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Credential outcomes additionally carry a ``reason`` that names the exact
    failure (``account_locked``, ``code_already_consumed``, ...). It is copied
    into ``detail`` so clients can tell a lockout from a wrong secret.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = dict(detail or {})
        self.headers = dict(headers or {})
        if self.reason:
            self.detail.setdefault("reason", self.reason)


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


# credential outcomes


class AccountNotFoundError(ValidationError):
    reason = "account_not_found"

    def __init__(self, username: str) -> None:
        super().__init__(f'username "{username}" not found')


class InvalidCredentialError(ValidationError):
    """No credential matched.

    Recovery reports this as 400; login passes ``status_code=401``.
    """

    reason = "no_match"

    @classmethod
    def for_login(cls) -> "InvalidCredentialError":
        err = cls(
            "invalid username or password",
            status_code=401,
            error_code="unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )
        err.detail["reason"] = "invalid_credential"
        return err


class AccountLockedError(ForbiddenError):
    reason = "account_locked"

    def __init__(self) -> None:
        super().__init__(
            "too many failed recovery attempts; contact an administrator to recover this account"
        )


class CodeAlreadyConsumedError(ValidationError):
    reason = "code_already_consumed"

    def __init__(self) -> None:
        super().__init__("account must be recovered using the recovery key")


class AccountBannedError(ForbiddenError):
    reason = "account_banned"

    def __init__(self) -> None:
        super().__init__("nope")


class NotAuthenticatedError(AuthenticationError):
    reason = "not_authenticated"


class NotLoggedInError(ConflictError):
    reason = "not_logged_in"

    def __init__(self) -> None:
        super().__init__("user is not logged in")


# registration pool


class RegistrationCodeNotFoundError(ValidationError):
    reason = "registration_code_not_found"

    def __init__(self) -> None:
        super().__init__("registration code not found")


class AlreadyVerifiedError(ValidationError):
    reason = "already_verified"

    def __init__(self) -> None:
        super().__init__("user is already verified")


class RegistrationCodeUsedError(ConflictError):
    reason = "registration_code_used"

    def __init__(self) -> None:
        super().__init__("registration code has already been used")


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AccountNotFoundError",
    "InvalidCredentialError",
    "AccountLockedError",
    "CodeAlreadyConsumedError",
    "AccountBannedError",
    "NotAuthenticatedError",
    "NotLoggedInError",
    "RegistrationCodeNotFoundError",
    "AlreadyVerifiedError",
    "RegistrationCodeUsedError",
]
