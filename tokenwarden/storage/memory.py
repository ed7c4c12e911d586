from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from tokenwarden.logging import get_logger
from tokenwarden.storage.common import (
    account_from_row,
    account_to_dict,
    generate_uuid,
    normalize_codes,
    registration_code_from_row,
    registration_code_to_dict,
    token_from_row,
    token_to_dict,
)
from tokenwarden.storage.errors import ConstraintViolation, UnknownAccount
from tokenwarden.storage.models import (
    AccessLevel,
    Account,
    RegistrationCode,
    Token,
    VerificationState,
)


class MemoryStore:
    """In-process credential store persisted to a JSON file.

    Every mutation rewrites ``<fs_root>/state/credential_store.json`` so attempt
    counters and consumed registration codes survive a restart. Readers get
    copies; the only way to change an account is ``save_account``, which
    compares versions the same way the postgres store does.
    """

    def __init__(self, fs_root: str = "/tmp/tokenwarden") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # account_id -> token; one row per account
        self.tokens: Dict[str, Token] = {}
        self.registration_codes: Dict[str, RegistrationCode] = {}
        # RLock so helpers can be called with the lock already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @contextmanager
    def _committing(self) -> Iterator[None]:
        """Hold the lock for a mutation and persist it, or undo it if that fails.

        The dicts are copied shallowly; mutators replace values instead of
        editing them in place, so the copies are a complete snapshot.
        """
        with self._data_lock:
            snapshot = (
                dict(self.accounts),
                dict(self.tokens),
                dict(self.registration_codes),
            )
            try:
                yield
                self._persist_state()
            except Exception:
                self.accounts, self.tokens, self.registration_codes = snapshot
                raise

    # accounts
    def create_account(
        self,
        username: str,
        password_hash: str,
        recovery_key_hash: str,
        *,
        access_level: AccessLevel = AccessLevel.UNVERIFIED,
        verification_code: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> Account:
        with self._committing():
            if any(a.username == username for a in self.accounts.values()):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if parent_id is not None and parent_id not in self.accounts:
                raise UnknownAccount(parent_id)
            account = Account(
                id=generate_uuid(),
                username=username,
                password_hash=password_hash,
                recovery_key_hash=recovery_key_hash,
                access_level=access_level,
                verification_code=verification_code,
                verification_state=(
                    VerificationState.ACTIVE
                    if verification_code
                    else VerificationState.UNSET
                ),
                parent_id=parent_id,
            )
            self.accounts[account.id] = account
        return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.username == username), None
            )
            return replace(account) if account else None

    def list_accounts(self) -> List[Account]:
        with self._data_lock:
            return [replace(a) for a in self.accounts.values()]

    def save_account(self, account: Account) -> bool:
        """Write ``account`` if nobody else has written it since it was read.

        Returns False on a stale version. On success the caller's copy picks
        up the new version so it can be saved again.
        """
        with self._data_lock:
            current = self.accounts.get(account.id)
            if current is None:
                raise UnknownAccount(account.id)
            if current.version != account.version:
                return False
            stored = replace(
                account, version=account.version + 1, updated_at=datetime.utcnow()
            )
            with self._committing():
                self.accounts[account.id] = stored
            account.version = stored.version
            account.updated_at = stored.updated_at
            return True

    # tokens
    def get_token_for_account(self, account_id: str) -> Optional[Token]:
        with self._data_lock:
            token = self.tokens.get(account_id)
            return replace(token) if token else None

    def get_token_by_value(self, value: str) -> Optional[Token]:
        with self._data_lock:
            token = next((t for t in self.tokens.values() if t.value == value), None)
            return replace(token) if token else None

    def insert_token_if_absent(self, token: Token) -> Token:
        """Store ``token`` unless the account already has one; return the live row."""
        with self._data_lock:
            existing = self.tokens.get(token.account_id)
            if existing is not None:
                return replace(existing)
            if token.account_id not in self.accounts:
                raise UnknownAccount(token.account_id)
            if any(t.value == token.value for t in self.tokens.values()):
                raise ConstraintViolation("token value collision", {"field": "value"})
            with self._committing():
                self.tokens[token.account_id] = replace(token)
            return replace(token)

    def delete_token(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.tokens:
                return False
            with self._committing():
                del self.tokens[account_id]
            return True

    # registration code pool
    def add_registration_codes(self, codes: Iterable[str]) -> int:
        with self._data_lock:
            fresh = [c for c in normalize_codes(codes) if c not in self.registration_codes]
            if not fresh:
                return 0
            with self._committing():
                for code in fresh:
                    self.registration_codes[code] = RegistrationCode(code=code)
            return len(fresh)

    def get_registration_code(self, code: str) -> Optional[RegistrationCode]:
        with self._data_lock:
            entry = self.registration_codes.get(code)
            return replace(entry) if entry else None

    def claim_registration_code(self, code: str, account_id: str) -> bool:
        """Assign ``code`` to ``account_id``.

        True when the code is now held by the account, including when it
        already was; False when it is missing or held by another account.
        """
        with self._data_lock:
            entry = self.registration_codes.get(code)
            if entry is None:
                return False
            if entry.account_id == account_id:
                return True
            if entry.claimed:
                return False
            if account_id not in self.accounts:
                raise UnknownAccount(account_id)
            if any(e.account_id == account_id for e in self.registration_codes.values()):
                raise ConstraintViolation(
                    "account already holds a registration code",
                    {"account_id": account_id},
                )
            with self._committing():
                self.registration_codes[code] = replace(entry, account_id=account_id)
            return True

    def list_registration_codes(self) -> List[RegistrationCode]:
        with self._data_lock:
            return [replace(entry) for entry in self.registration_codes.values()]

    # persistence
    def _persist_state(self) -> None:
        state = {
            "accounts": [account_to_dict(a) for a in self.accounts.values()],
            "tokens": [token_to_dict(t) for t in self.tokens.values()],
            "registration_codes": [
                registration_code_to_dict(c) for c in self.registration_codes.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            row["id"]: account_from_row(row) for row in data.get("accounts", [])
        }
        self.tokens = {
            row["account_id"]: token_from_row(row) for row in data.get("tokens", [])
        }
        self.registration_codes = {
            row["code"]: registration_code_from_row(row)
            for row in data.get("registration_codes", [])
        }
        self.logger.info(
            "credential_state_loaded",
            accounts=len(self.accounts),
            tokens=len(self.tokens),
            registration_codes=len(self.registration_codes),
        )
        return True
