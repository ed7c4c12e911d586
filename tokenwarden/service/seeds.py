"""Parsing and loading of the registration-code and client-account seed files.

Registration codes: one per line, normalized, blank lines ignored.
Registered clients: ``username:password:recoveryKey`` per line. A line that
does not split into exactly three fields aborts the whole load.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List

from tokenwarden.logging import get_logger
from tokenwarden.service.hashing import SecretHasher, normalize_secret
from tokenwarden.storage.common import normalize_codes
from tokenwarden.storage.models import AccessLevel, Account

logger = get_logger(__name__)


class SeedFormatError(ValueError):
    """A seed file line could not be parsed."""

    def __init__(self, message: str, *, line_number: int) -> None:
        super().__init__(f"line {line_number}: {message}")
        self.line_number = line_number


@dataclass(frozen=True)
class ClientSeed:
    username: str
    password: str
    recovery_key: str


def parse_registration_codes(text: str) -> List[str]:
    return normalize_codes(text.splitlines())


def parse_registered_clients(text: str) -> List[ClientSeed]:
    seeds: List[ClientSeed] = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        parts = line.split(":")
        if len(parts) != 3:
            raise SeedFormatError("client entry is malformed", line_number=line_number)
        username, password, recovery_key = parts
        username = username.strip()
        password = password.strip()
        recovery_key = normalize_secret(recovery_key).strip()
        if not username or not password or not recovery_key:
            raise SeedFormatError("client entry has an empty field", line_number=line_number)
        seeds.append(ClientSeed(username, password, recovery_key))
    return seeds


def load_registration_codes(store, path: Path) -> int:
    codes = parse_registration_codes(Path(path).read_text(encoding="utf-8"))
    added = store.add_registration_codes(codes)
    logger.info("registration_codes_loaded", path=str(path), parsed=len(codes), added=added)
    return added


def load_registered_clients(store, hasher: SecretHasher, path: Path) -> List[Account]:
    """Create a ``client`` account per seed line; existing usernames are skipped."""
    seeds = parse_registered_clients(Path(path).read_text(encoding="utf-8"))
    created: List[Account] = []
    for seed in seeds:
        if store.get_account_by_username(seed.username) is not None:
            logger.info("client_seed_skipped", username=seed.username)
            continue
        account = store.create_account(
            seed.username,
            hasher.hash(seed.password),
            hasher.hash(seed.recovery_key),
            access_level=AccessLevel.CLIENT,
        )
        created.append(account)
    logger.info("client_seeds_loaded", path=str(path), created=len(created))
    return created
