"""Matching a recovery input against an account's alternate credentials.

An account can be recovered with any of three secrets: its one-time
registration code, its password, or its recovery key. Each is a strategy with
the same ``attempt(account, candidate)`` shape; the verifier runs them in
order and the first one that reports a match wins.

Strategies only mutate the in-hand ``Account`` copy (consuming a code). The
caller decides when to persist it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Protocol, Sequence

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import CodeAlreadyConsumedError
from tokenwarden.service.hashing import SecretHasher, normalize_secret
from tokenwarden.storage.models import Account

logger = get_logger(__name__)


class MatchOutcome(str, Enum):
    CONSUMED_VERIFICATION_CODE = "consumed_verification_code"
    PASSWORD_MATCH = "password_match"
    RECOVERY_KEY_MATCH = "recovery_key_match"
    NO_MATCH = "no_match"

    @property
    def matched(self) -> bool:
        return self is not MatchOutcome.NO_MATCH


@dataclass(frozen=True)
class RecoveryCandidate:
    """A submitted secret in both its raw and normalized forms."""

    raw: str
    normalized: str

    @classmethod
    def from_raw(cls, raw: str) -> "RecoveryCandidate":
        return cls(raw=raw, normalized=normalize_secret(raw))


class RecoveryStrategy(Protocol):
    name: str

    async def attempt(
        self, account: Account, candidate: RecoveryCandidate
    ) -> MatchOutcome: ...


class VerificationCodeStrategy:
    """Registration codes are stored normalized in plaintext; compare exactly."""

    name = "verification_code"

    async def attempt(
        self, account: Account, candidate: RecoveryCandidate
    ) -> MatchOutcome:
        if account.has_active_code and candidate.normalized == account.verification_code:
            account.consume_code()
            return MatchOutcome.CONSUMED_VERIFICATION_CODE
        return MatchOutcome.NO_MATCH


class PasswordStrategy:
    """Passwords are case and space sensitive, so the raw input is verified."""

    name = "password"

    def __init__(self, hasher: SecretHasher) -> None:
        self.hasher = hasher

    async def attempt(
        self, account: Account, candidate: RecoveryCandidate
    ) -> MatchOutcome:
        if await self.hasher.verify_async(candidate.raw, account.password_hash):
            return MatchOutcome.PASSWORD_MATCH
        return MatchOutcome.NO_MATCH


class RecoveryKeyStrategy:
    """Recovery keys are normalized before hashing at issue time."""

    name = "recovery_key"

    def __init__(self, hasher: SecretHasher) -> None:
        self.hasher = hasher

    async def attempt(
        self, account: Account, candidate: RecoveryCandidate
    ) -> MatchOutcome:
        if await self.hasher.verify_async(
            candidate.normalized, account.recovery_key_hash
        ):
            return MatchOutcome.RECOVERY_KEY_MATCH
        return MatchOutcome.NO_MATCH


def default_strategies(hasher: SecretHasher) -> List[RecoveryStrategy]:
    return [
        VerificationCodeStrategy(),
        PasswordStrategy(hasher),
        RecoveryKeyStrategy(hasher),
    ]


class RecoveryCredentialVerifier:
    def __init__(
        self,
        strategies: Iterable[RecoveryStrategy],
        *,
        code_length: int = 6,
    ) -> None:
        self.strategies: Sequence[RecoveryStrategy] = tuple(strategies)
        self.code_length = code_length

    async def match(self, account: Account, raw_input: str) -> MatchOutcome:
        """Return the first matching outcome, or ``NO_MATCH``.

        Raises ``CodeAlreadyConsumedError`` when the input has the shape of a
        registration code and the account's code is already spent; the stale
        code must not be tried against the hashed secrets.
        """
        candidate = RecoveryCandidate.from_raw(raw_input)
        if len(candidate.normalized) == self.code_length and account.code_consumed:
            logger.info("recovery_code_replay", account_id=account.id)
            raise CodeAlreadyConsumedError()
        for strategy in self.strategies:
            outcome = await strategy.attempt(account, candidate)
            if outcome.matched:
                logger.info(
                    "recovery_matched",
                    account_id=account.id,
                    strategy=strategy.name,
                )
                return outcome
        return MatchOutcome.NO_MATCH
