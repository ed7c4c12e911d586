"""Unit tests for the recovery credential verifier.

Covers:
- Normalization of the submitted secret
- Strategy order (code, then password, then recovery key)
- One-time consumption of registration codes
- The replay guard for code-shaped input
"""

import pytest

from tokenwarden.service.errors import CodeAlreadyConsumedError
from tokenwarden.service.hashing import normalize_secret
from tokenwarden.service.recovery import (
    MatchOutcome,
    RecoveryCandidate,
    RecoveryCredentialVerifier,
    default_strategies,
)
from tokenwarden.storage.models import VerificationState


@pytest.fixture
def verifier(hasher):
    return RecoveryCredentialVerifier(default_strategies(hasher), code_length=6)


class TestNormalization:
    def test_lowercases_and_strips_literal_spaces(self):
        assert normalize_secret("ABC ABC") == "abcabc"
        assert normalize_secret(" Lime Kite ") == "limekite"

    def test_keeps_other_whitespace(self):
        assert normalize_secret("ab\tc\nD") == "ab\tc\nd"

    def test_candidate_keeps_raw_form(self):
        candidate = RecoveryCandidate.from_raw("Secret Pass 1")
        assert candidate.raw == "Secret Pass 1"
        assert candidate.normalized == "secretpass1"


class TestCredentialPaths:
    async def test_code_matches_case_and_space_insensitively(self, verifier, account_factory):
        account = account_factory(code="abcabc")

        outcome = await verifier.match(account, "ABC ABC")

        assert outcome is MatchOutcome.CONSUMED_VERIFICATION_CODE
        assert account.verification_state is VerificationState.CONSUMED
        # raw code is kept next to the state
        assert account.verification_code == "abcabc"

    async def test_password_is_case_sensitive(self, verifier, account_factory):
        account = account_factory(password="Secret Pass 1")

        assert await verifier.match(account, "Secret Pass 1") is MatchOutcome.PASSWORD_MATCH
        assert await verifier.match(account, "secret pass 1") is MatchOutcome.NO_MATCH

    async def test_recovery_key_is_normalized(self, verifier, account_factory):
        account = account_factory(recovery_key="Lime Kite Orbit")

        outcome = await verifier.match(account, "LIME kite  orbit")

        assert outcome is MatchOutcome.RECOVERY_KEY_MATCH

    async def test_no_match(self, verifier, account_factory):
        account = account_factory(code="abcabc")

        outcome = await verifier.match(account, "nothing like it")

        assert outcome is MatchOutcome.NO_MATCH
        assert account.verification_state is VerificationState.ACTIVE

    async def test_code_is_tried_before_password(self, verifier, account_factory):
        # password equal to the code: the code path wins and is consumed
        account = account_factory(password="qwerty", code="qwerty")

        outcome = await verifier.match(account, "qwerty")

        assert outcome is MatchOutcome.CONSUMED_VERIFICATION_CODE

    async def test_account_without_code_never_matches_code_path(self, verifier, account_factory):
        account = account_factory(code=None)

        outcome = await verifier.match(account, "abcabc")

        assert outcome is MatchOutcome.NO_MATCH


class TestReplayGuard:
    async def test_consumed_code_is_rejected_as_replay(self, verifier, account_factory):
        account = account_factory(code="abcabc")
        await verifier.match(account, "abcabc")

        with pytest.raises(CodeAlreadyConsumedError) as excinfo:
            await verifier.match(account, "ABC ABC")

        assert excinfo.value.status_code == 400
        assert excinfo.value.detail["reason"] == "code_already_consumed"

    async def test_guard_applies_to_any_code_shaped_input(self, verifier, account_factory):
        account = account_factory(code="abcabc")
        account.consume_code()

        with pytest.raises(CodeAlreadyConsumedError):
            await verifier.match(account, "zzzzzz")

    async def test_longer_input_still_reaches_recovery_key(self, verifier, account_factory):
        account = account_factory(code="abcabc", recovery_key="Lime Kite Orbit")
        account.consume_code()

        outcome = await verifier.match(account, "lime kite orbit")

        assert outcome is MatchOutcome.RECOVERY_KEY_MATCH

    async def test_guard_inactive_while_code_unused(self, verifier, account_factory):
        account = account_factory(code="abcabc")

        outcome = await verifier.match(account, "zzzzzz")

        assert outcome is MatchOutcome.NO_MATCH

    async def test_code_length_is_configurable(self, hasher, account_factory):
        verifier = RecoveryCredentialVerifier(default_strategies(hasher), code_length=8)
        account = account_factory(code="abcdabcd")
        account.consume_code()

        # six characters is no longer code-shaped
        assert await verifier.match(account, "zzzzzz") is MatchOutcome.NO_MATCH
        with pytest.raises(CodeAlreadyConsumedError):
            await verifier.match(account, "zzzz zzzz")


class TestStrategyList:
    async def test_additional_strategy_is_consulted_in_order(self, hasher, account_factory):
        calls = []

        class MasterKey:
            name = "master_key"

            async def attempt(self, account, candidate):
                calls.append(candidate.normalized)
                if candidate.normalized == "opensesame":
                    return MatchOutcome.RECOVERY_KEY_MATCH
                return MatchOutcome.NO_MATCH

        verifier = RecoveryCredentialVerifier([*default_strategies(hasher), MasterKey()])
        account = account_factory()

        assert await verifier.match(account, "Open Sesame") is MatchOutcome.RECOVERY_KEY_MATCH
        # earlier matches short-circuit
        assert await verifier.match(account, "Secret Pass 1") is MatchOutcome.PASSWORD_MATCH
        assert calls == ["opensesame"]
