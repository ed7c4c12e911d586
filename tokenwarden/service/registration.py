from __future__ import annotations

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    AlreadyVerifiedError,
    ConflictError,
    NotFoundError,
    RegistrationCodeNotFoundError,
    RegistrationCodeUsedError,
)
from tokenwarden.service.hashing import normalize_secret
from tokenwarden.storage.models import AccessLevel, Account, VerificationState

logger = get_logger(__name__)


class RegistrationService:
    """Hands pool registration codes to accounts.

    Once claimed, a code's one-time validity is tracked on the account
    (``verification_state``), never on the pool entry.
    """

    def __init__(self, store, *, max_retries: int = 5) -> None:
        self.store = store
        self.max_retries = max_retries

    def verify(self, account: Account, raw_code: str) -> Account:
        code = normalize_secret(raw_code)
        entry = self.store.get_registration_code(code)
        if entry is None:
            raise RegistrationCodeNotFoundError()
        if account.verification_state is not VerificationState.UNSET:
            raise AlreadyVerifiedError()
        # a claim this account already holds succeeds, so a failed write can be retried
        if not self.store.claim_registration_code(code, account.id):
            logger.info("registration_code_reused", account_id=account.id)
            raise RegistrationCodeUsedError()

        for _ in range(self.max_retries + 1):
            current = self.store.get_account(account.id)
            if current is None:
                raise NotFoundError("account not found")
            current.verification_code = code
            current.verification_state = VerificationState.ACTIVE
            if current.access_level == AccessLevel.UNVERIFIED:
                current.access_level = AccessLevel.VERIFIED
            if self.store.save_account(current):
                logger.info("account_verified", account_id=current.id)
                return current
        raise ConflictError(
            "account was modified concurrently, please retry",
            detail={"reason": "write_conflict"},
        )
