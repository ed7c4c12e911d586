from __future__ import annotations

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import AccountLockedError
from tokenwarden.storage.models import Account

logger = get_logger(__name__)


class AttemptLimiter:
    """Consecutive failed-recovery counter with a lockout threshold.

    The counter lives on the account row; this class only decides and mutates
    the in-hand copy. Callers persist it with the store's versioned write.
    """

    def __init__(self, max_attempts: int = 5) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts

    def is_locked(self, account: Account) -> bool:
        return account.recovery_attempts >= self.max_attempts

    def check_allowed(self, account: Account) -> None:
        """Raise ``AccountLockedError`` before any secret is compared."""
        if self.is_locked(account):
            logger.info(
                "recovery_rejected_locked",
                account_id=account.id,
                attempts=account.recovery_attempts,
            )
            raise AccountLockedError()

    def record_failure(self, account: Account) -> None:
        account.recovery_attempts += 1
        if account.recovery_attempts == self.max_attempts:
            logger.warning("account_locked", account_id=account.id)

    @staticmethod
    def record_success(account: Account) -> None:
        account.recovery_attempts = 0
