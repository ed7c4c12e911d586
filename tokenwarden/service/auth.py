from __future__ import annotations

from typing import Iterable, List, Optional, Protocol

from tokenwarden.config import Settings
from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    AccountBannedError,
    AccountNotFoundError,
    CodeAlreadyConsumedError,
    ConflictError,
    InvalidCredentialError,
    NotAuthenticatedError,
)
from tokenwarden.service.hashing import SecretHasher
from tokenwarden.service.limiter import AttemptLimiter
from tokenwarden.service.recovery import (
    MatchOutcome,
    RecoveryCredentialVerifier,
    default_strategies,
)
from tokenwarden.service.tokens import TokenRegistry
from tokenwarden.storage.models import AccessLevel, Account, RegistrationCode, Token

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def create_account(
        self,
        username: str,
        password_hash: str,
        recovery_key_hash: str,
        *,
        access_level: AccessLevel = AccessLevel.UNVERIFIED,
        verification_code: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def list_accounts(self) -> List[Account]: ...

    def save_account(self, account: Account) -> bool: ...

    def get_token_for_account(self, account_id: str) -> Optional[Token]: ...

    def get_token_by_value(self, value: str) -> Optional[Token]: ...

    def insert_token_if_absent(self, token: Token) -> Token: ...

    def delete_token(self, account_id: str) -> bool: ...

    def add_registration_codes(self, codes: Iterable[str]) -> int: ...

    def get_registration_code(self, code: str) -> Optional[RegistrationCode]: ...

    def claim_registration_code(self, code: str, account_id: str) -> bool: ...

    def list_registration_codes(self) -> List[RegistrationCode]: ...


class AuthService:
    """Login, logout and recovery on top of the credential store.

    An account is logged in exactly when it has a token row. Login and
    recovery both end in ``TokenRegistry.get_or_create``, so repeating either
    returns the token the account already holds.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        settings: Settings,
        *,
        limiter: Optional[AttemptLimiter] = None,
        verifier: Optional[RecoveryCredentialVerifier] = None,
        tokens: Optional[TokenRegistry] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings
        self.limiter = limiter or AttemptLimiter(settings.recovery_max_attempts)
        self.verifier = verifier or RecoveryCredentialVerifier(
            default_strategies(hasher),
            code_length=settings.registration_code_length,
        )
        self.tokens = tokens or TokenRegistry(store, token_bytes=settings.token_bytes)
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    async def _burn_verify(self, password: str) -> None:
        # unknown usernames still pay for one hash verification
        if self._dummy_hash is None:
            self._dummy_hash = await self.hasher.hash_async("tokenwarden-dummy-secret")
        await self.hasher.verify_async(password, self._dummy_hash)

    async def verify_primary_credential(self, username: str, password: str) -> Account:
        account = self.store.get_account_by_username(username)
        if account is None:
            await self._burn_verify(password)
            self.logger.info("login_failed", reason="unknown_username")
            raise InvalidCredentialError.for_login()
        if not await self.hasher.verify_async(password, account.password_hash):
            self.logger.info("login_failed", account_id=account.id, reason="bad_password")
            raise InvalidCredentialError.for_login()
        return account

    async def login(self, username: str, password: str) -> Token:
        account = await self.verify_primary_credential(username, password)
        # checked only after the password succeeded
        if account.access_level == AccessLevel.BANNED:
            self.logger.info("login_rejected_banned", account_id=account.id)
            raise AccountBannedError()
        token = self.tokens.get_or_create(account)
        self.logger.info("login_succeeded", account_id=account.id)
        return token

    def logout(self, account: Account) -> None:
        self.tokens.revoke(account)

    def authenticate_bearer(self, value: Optional[str]) -> Account:
        token = self.tokens.resolve(value or "")
        if token is None:
            raise NotAuthenticatedError("invalid or missing bearer token")
        account = self.store.get_account(token.account_id)
        if account is None:
            raise NotAuthenticatedError("invalid or missing bearer token")
        return account

    async def recover(self, username: str, raw_input: str) -> Token:
        """Exchange any alternate credential for the account's token.

        The account row is read with its version, matched, and written back
        with a compare-and-set. A lost write means another request changed the
        counter or consumed the code first, so the whole sequence reruns
        against the fresh row.
        """
        retries = self.settings.recovery_max_retries
        for attempt in range(retries + 1):
            account = self.store.get_account_by_username(username)
            if account is None:
                self.logger.info("recovery_account_not_found")
                raise AccountNotFoundError(username)
            self.limiter.check_allowed(account)

            try:
                outcome = await self.verifier.match(account, raw_input)
            except CodeAlreadyConsumedError:
                if not self.settings.count_consumed_code_replays:
                    raise
                self.limiter.record_failure(account)
                if self.store.save_account(account):
                    raise
                self.logger.info(
                    "recovery_write_conflict", account_id=account.id, attempt=attempt
                )
                continue

            if outcome.matched:
                self.limiter.record_success(account)
            else:
                self.limiter.record_failure(account)
            if not self.store.save_account(account):
                self.logger.info(
                    "recovery_write_conflict", account_id=account.id, attempt=attempt
                )
                continue

            if outcome is MatchOutcome.NO_MATCH:
                self.logger.info(
                    "recovery_no_match",
                    account_id=account.id,
                    attempts=account.recovery_attempts,
                )
                raise InvalidCredentialError("no match for supplied recovery key")
            token = self.tokens.get_or_create(account)
            self.logger.info(
                "recovery_succeeded", account_id=account.id, outcome=outcome.value
            )
            return token

        self.logger.warning("recovery_retries_exhausted", retries=retries)
        raise ConflictError(
            "account was modified concurrently, please retry",
            detail={"reason": "write_conflict"},
        )
