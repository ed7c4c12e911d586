import pytest

from tokenwarden.service.errors import NotLoggedInError
from tokenwarden.service.tokens import TokenRegistry
from tokenwarden.storage.models import Token


@pytest.fixture
def registry(store):
    return TokenRegistry(store, token_bytes=32)


def test_get_or_create_is_idempotent(registry, account_factory):
    account = account_factory()

    first = registry.get_or_create(account)
    second = registry.get_or_create(account)

    assert first.value == second.value
    assert first.id == second.id


def test_tokens_are_distinct_per_account(registry, account_factory):
    a = registry.get_or_create(account_factory("alice"))
    b = registry.get_or_create(account_factory("bob"))

    assert a.value != b.value
    # 32 random bytes, urlsafe base64 without padding
    assert len(a.value) >= 43


def test_revoke_then_reissue_yields_new_value(registry, account_factory):
    account = account_factory()
    original = registry.get_or_create(account)

    registry.revoke(account)
    replacement = registry.get_or_create(account)

    assert replacement.value != original.value
    assert registry.resolve(original.value) is None
    assert registry.resolve(replacement.value).account_id == account.id


def test_revoke_without_token_is_a_conflict(registry, account_factory):
    account = account_factory()

    with pytest.raises(NotLoggedInError) as excinfo:
        registry.revoke(account)

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["reason"] == "not_logged_in"


def test_second_revoke_is_a_conflict(registry, account_factory):
    account = account_factory()
    registry.get_or_create(account)

    registry.revoke(account)
    with pytest.raises(NotLoggedInError):
        registry.revoke(account)


def test_lost_insert_race_returns_winner_token(store, account_factory):
    account = account_factory()
    winner = Token.new(account.id, "winner-token-value")

    class RacingStore:
        """Reports no token on read, then lets a competitor insert first."""

        def __getattr__(self, name):
            return getattr(store, name)

        def get_token_for_account(self, account_id):
            return None

        def insert_token_if_absent(self, token):
            store.insert_token_if_absent(winner)
            return store.insert_token_if_absent(token)

    registry = TokenRegistry(RacingStore())

    issued = registry.get_or_create(account)

    assert issued.value == "winner-token-value"
    assert store.get_token_for_account(account.id).value == "winner-token-value"


def test_resolve_ignores_empty_value(registry):
    assert registry.resolve("") is None
