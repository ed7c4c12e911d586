import pytest

from tokenwarden.storage.errors import ConstraintViolation, UnknownAccount
from tokenwarden.storage.memory import MemoryStore
from tokenwarden.storage.models import AccessLevel, Token, VerificationState


def _account(store, username="sam", **kwargs):
    return store.create_account(username, "pw-hash", "rk-hash", **kwargs)


def test_security_fields_survive_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    account = _account(store, verification_code="abcabc", access_level=AccessLevel.CLIENT)
    account.recovery_attempts = 3
    account.consume_code()
    assert store.save_account(account)
    store.insert_token_if_absent(Token.new(account.id, "persisted-token"))
    store.add_registration_codes(["Pool One"])

    reloaded = MemoryStore(fs_root=str(tmp_path))

    restored = reloaded.get_account_by_username("sam")
    assert restored.recovery_attempts == 3
    assert restored.verification_state is VerificationState.CONSUMED
    assert restored.verification_code == "abcabc"
    assert restored.access_level is AccessLevel.CLIENT
    assert restored.version == account.version
    assert reloaded.get_token_by_value("persisted-token").account_id == account.id
    assert reloaded.get_registration_code("poolone") is not None


def test_duplicate_username_rejected(store):
    _account(store)

    with pytest.raises(ConstraintViolation) as excinfo:
        _account(store)

    assert excinfo.value.detail == {"field": "username"}


def test_parent_must_exist(store):
    parent = _account(store, "parent")

    child = _account(store, "child", parent_id=parent.id)

    assert child.parent_id == parent.id
    with pytest.raises(UnknownAccount):
        _account(store, "orphan", parent_id="missing")


def test_new_account_code_state(store):
    assert _account(store, "a").verification_state is VerificationState.UNSET
    assert _account(store, "b", verification_code="abcabc").verification_state is (
        VerificationState.ACTIVE
    )


def test_readers_get_copies(store):
    account = _account(store)
    account.recovery_attempts = 4

    assert store.get_account(account.id).recovery_attempts == 0


def test_save_is_compare_and_set(store):
    account = _account(store)
    first = store.get_account(account.id)
    second = store.get_account(account.id)

    first.recovery_attempts = 1
    assert store.save_account(first)
    assert first.version == 1

    second.recovery_attempts = 5
    assert not store.save_account(second)
    assert store.get_account(account.id).recovery_attempts == 1

    # the winner's copy picked up the new version and can save again
    first.recovery_attempts = 2
    assert store.save_account(first)
    assert store.get_account(account.id).version == 2


def test_save_unknown_account(store):
    account = _account(store)
    account.id = "missing"

    with pytest.raises(UnknownAccount):
        store.save_account(account)


def test_insert_token_if_absent_keeps_first(store):
    account = _account(store)

    first = store.insert_token_if_absent(Token.new(account.id, "first"))
    second = store.insert_token_if_absent(Token.new(account.id, "second"))

    assert first.value == second.value == "first"
    assert store.get_token_by_value("second") is None


def test_token_value_collision_rejected(store):
    a = _account(store, "a")
    b = _account(store, "b")
    store.insert_token_if_absent(Token.new(a.id, "same"))

    with pytest.raises(ConstraintViolation):
        store.insert_token_if_absent(Token.new(b.id, "same"))


def test_token_requires_account(store):
    with pytest.raises(UnknownAccount):
        store.insert_token_if_absent(Token.new("missing", "value"))


def test_delete_token_reports_presence(store):
    account = _account(store)
    store.insert_token_if_absent(Token.new(account.id, "value"))

    assert store.delete_token(account.id) is True
    assert store.delete_token(account.id) is False


def test_registration_pool(store):
    account = _account(store)
    other = _account(store, "other")

    added = store.add_registration_codes(["ABC ABC", "abcabc", "", "  ", "xyz xyz"])

    assert added == 2
    assert sorted(c.code for c in store.list_registration_codes()) == ["abcabc", "xyzxyz"]
    assert store.claim_registration_code("abcabc", account.id) is True
    # the holder may claim its own code again
    assert store.claim_registration_code("abcabc", account.id) is True
    assert store.claim_registration_code("abcabc", other.id) is False
    assert store.claim_registration_code("nope", other.id) is False
    with pytest.raises(ConstraintViolation):
        store.claim_registration_code("xyzxyz", account.id)
    assert store.get_registration_code("abcabc").account_id == account.id


def _failing_persist():
    raise RuntimeError("failed to persist credential state: disk full")


def test_failed_persist_rolls_back_account_write(store, monkeypatch):
    account = _account(store)
    account.recovery_attempts = 3
    monkeypatch.setattr(store, "_persist_state", _failing_persist)

    with pytest.raises(RuntimeError):
        store.save_account(account)

    stored = store.get_account(account.id)
    assert stored.recovery_attempts == 0
    assert stored.version == 0
    assert account.version == 0


def test_failed_persist_rolls_back_token_and_claim(store, monkeypatch):
    account = _account(store)
    store.add_registration_codes(["abcabc"])
    monkeypatch.setattr(store, "_persist_state", _failing_persist)

    with pytest.raises(RuntimeError):
        store.insert_token_if_absent(Token.new(account.id, "value"))
    with pytest.raises(RuntimeError):
        store.claim_registration_code("abcabc", account.id)
    with pytest.raises(RuntimeError):
        _account(store, "other")

    assert store.get_token_for_account(account.id) is None
    assert store.get_registration_code("abcabc").account_id is None
    assert store.get_account_by_username("other") is None


def test_failed_persist_keeps_token_on_delete(store, monkeypatch):
    account = _account(store)
    store.insert_token_if_absent(Token.new(account.id, "value"))
    monkeypatch.setattr(store, "_persist_state", _failing_persist)

    with pytest.raises(RuntimeError):
        store.delete_token(account.id)

    assert store.get_token_for_account(account.id).value == "value"
