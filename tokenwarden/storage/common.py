"""Helpers shared by the memory and postgres credential stores.

Both backends serialize the same dataclasses; keeping the conversions here
keeps the JSON state file and the SQL row mapping in agreement.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from tokenwarden.storage.models import (
    AccessLevel,
    Account,
    RegistrationCode,
    Token,
    VerificationState,
)


# ============================================================================
# NORMALIZATION
# ============================================================================


def normalize_secret(raw: str) -> str:
    """Lowercase and drop literal spaces (U+0020); other whitespace is kept."""
    return raw.lower().replace(" ", "")


def normalize_codes(lines: Iterable[str]) -> List[str]:
    """Normalize a batch of registration codes, dropping blanks and duplicates."""
    seen: set[str] = set()
    codes: List[str] = []
    for line in lines:
        code = normalize_secret(line).strip()
        if not code or code in seen:
            continue
        seen.add(code)
        codes.append(code)
    return codes


# ============================================================================
# ROW / JSON MAPPING
# ============================================================================


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict row or attribute object without raising."""
    if row is None:
        return default
    if isinstance(row, dict):
        return row.get(key, default)
    return getattr(row, key, default)


def _parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def account_from_row(row: Any) -> Account:
    return Account(
        id=str(safe_row_value(row, "id")),
        username=safe_row_value(row, "username"),
        password_hash=safe_row_value(row, "password_hash"),
        recovery_key_hash=safe_row_value(row, "recovery_key_hash"),
        access_level=AccessLevel.parse(
            safe_row_value(row, "access_level", AccessLevel.UNVERIFIED)
        ),
        verification_code=safe_row_value(row, "verification_code"),
        verification_state=VerificationState(
            safe_row_value(row, "verification_state", VerificationState.UNSET.value)
        ),
        recovery_attempts=int(safe_row_value(row, "recovery_attempts", 0) or 0),
        parent_id=(
            str(safe_row_value(row, "parent_id"))
            if safe_row_value(row, "parent_id")
            else None
        ),
        version=int(safe_row_value(row, "version", 0) or 0),
        created_at=_parse_datetime(safe_row_value(row, "created_at"))
        or datetime.utcnow(),
        updated_at=_parse_datetime(safe_row_value(row, "updated_at")),
    )


def account_to_dict(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "username": account.username,
        "password_hash": account.password_hash,
        "recovery_key_hash": account.recovery_key_hash,
        "access_level": account.access_level.name.lower(),
        "verification_code": account.verification_code,
        "verification_state": account.verification_state.value,
        "recovery_attempts": account.recovery_attempts,
        "parent_id": account.parent_id,
        "version": account.version,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat() if account.updated_at else None,
    }


def token_from_row(row: Any) -> Token:
    return Token(
        id=str(safe_row_value(row, "id")),
        account_id=str(safe_row_value(row, "account_id")),
        value=safe_row_value(row, "value"),
        issued_at=_parse_datetime(safe_row_value(row, "issued_at"))
        or datetime.utcnow(),
    )


def token_to_dict(token: Token) -> Dict[str, Any]:
    return {
        "id": token.id,
        "account_id": token.account_id,
        "value": token.value,
        "issued_at": token.issued_at.isoformat(),
    }


def registration_code_from_row(row: Any) -> RegistrationCode:
    account_id = safe_row_value(row, "account_id")
    return RegistrationCode(
        code=safe_row_value(row, "code"),
        account_id=str(account_id) if account_id else None,
        created_at=_parse_datetime(safe_row_value(row, "created_at"))
        or datetime.utcnow(),
    )


def registration_code_to_dict(entry: RegistrationCode) -> Dict[str, Any]:
    return {
        "code": entry.code,
        "account_id": entry.account_id,
        "created_at": entry.created_at.isoformat(),
    }


def generate_uuid() -> str:
    return str(uuid.uuid4())
