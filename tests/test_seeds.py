import importlib.util
from pathlib import Path

import pytest

from tokenwarden.config import get_settings, reset_settings_cache
from tokenwarden.service.seeds import (
    ClientSeed,
    SeedFormatError,
    load_registered_clients,
    load_registration_codes,
    parse_registered_clients,
    parse_registration_codes,
)
from tokenwarden.storage.models import AccessLevel


def test_parse_registration_codes_normalizes_and_dedupes():
    text = "ABC ABC\n\n  xyz xyz  \nabcabc\n"

    assert parse_registration_codes(text) == ["abcabc", "xyzxyz"]


def test_parse_registered_clients():
    text = "moderator: Mod Pass :Lime Kite Orbit\n\nbot:pw:KEY\n"

    seeds = parse_registered_clients(text)

    assert seeds == [
        ClientSeed("moderator", "Mod Pass", "limekiteorbit"),
        ClientSeed("bot", "pw", "key"),
    ]


@pytest.mark.parametrize(
    "line",
    ["only:two", "one:two:three:four", "no-separators"],
)
def test_malformed_client_line_aborts(line):
    with pytest.raises(SeedFormatError) as excinfo:
        parse_registered_clients(f"good:pw:key\n{line}\n")

    assert excinfo.value.line_number == 2


def test_empty_client_field_is_rejected():
    with pytest.raises(SeedFormatError):
        parse_registered_clients("user::key")


def test_load_registration_codes(store, tmp_path):
    path = tmp_path / "registration-codes.txt"
    path.write_text("ABC ABC\nxyz xyz\n", encoding="utf-8")

    assert load_registration_codes(store, path) == 2
    # reloading the same file adds nothing
    assert load_registration_codes(store, path) == 0


def test_load_registered_clients_skips_existing(store, hasher, tmp_path, account_factory):
    account_factory("existing")
    path = tmp_path / "registered-clients.txt"
    path.write_text("existing:pw:key\nbot:Bot Pass:Bot Key\n", encoding="utf-8")

    created = load_registered_clients(store, hasher, path)

    assert [a.username for a in created] == ["bot"]
    bot = store.get_account_by_username("bot")
    assert bot.access_level is AccessLevel.CLIENT
    assert hasher.verify("Bot Pass", bot.password_hash)
    assert hasher.verify("botkey", bot.recovery_key_hash)
    assert store.get_account_by_username("existing").access_level is AccessLevel.VERIFIED


def _seed_script():
    path = Path(__file__).resolve().parent.parent / "scripts" / "seed_accounts.py"
    spec = importlib.util.spec_from_file_location("seed_accounts", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_seed_script_defaults_come_from_settings(tmp_path, monkeypatch):
    monkeypatch.delenv("REGISTRATION_CODES_FILE", raising=False)
    monkeypatch.delenv("REGISTERED_CLIENTS_FILE", raising=False)
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text(
        "REGISTRATION_CODES_FILE=/srv/codes.txt\nREGISTERED_CLIENTS_FILE=/srv/clients.txt\n"
    )
    reset_settings_cache()

    args = _seed_script().build_parser(get_settings()).parse_args([])

    assert args.codes == "/srv/codes.txt"
    assert args.clients == "/srv/clients.txt"
    assert args.dry_run is False
    reset_settings_cache()
