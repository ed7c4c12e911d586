from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional


class AccessLevel(IntEnum):
    """Ordered privilege tiers; comparisons follow the integer values."""

    UNVERIFIED = 0
    BANNED = 1
    QUARANTINED = 2
    VERIFIED = 3
    CLIENT = 4
    MODERATOR = 5
    THO = 6
    ADMIN = 7

    @classmethod
    def parse(cls, raw: "AccessLevel | str | int") -> "AccessLevel":
        if isinstance(raw, AccessLevel):
            return raw
        if isinstance(raw, int):
            return cls(raw)
        return cls[str(raw).strip().upper()]


class VerificationState(str, Enum):
    """Lifecycle of an account's one-time registration code."""

    UNSET = "unset"
    ACTIVE = "active"
    CONSUMED = "consumed"


@dataclass
class Account:
    id: str
    username: str
    password_hash: str
    recovery_key_hash: str
    access_level: AccessLevel = AccessLevel.UNVERIFIED
    verification_code: Optional[str] = None
    verification_state: VerificationState = VerificationState.UNSET
    recovery_attempts: int = 0
    parent_id: Optional[str] = None
    version: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    @property
    def has_active_code(self) -> bool:
        return (
            self.verification_state is VerificationState.ACTIVE
            and bool(self.verification_code)
        )

    @property
    def code_consumed(self) -> bool:
        return self.verification_state is VerificationState.CONSUMED

    def consume_code(self) -> None:
        # raw code is kept so a consumed code stays distinguishable from an unset one
        self.verification_state = VerificationState.CONSUMED


@dataclass
class Token:
    id: str
    account_id: str
    value: str
    issued_at: datetime

    @classmethod
    def new(cls, account_id: str, value: str) -> "Token":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            value=value,
            issued_at=datetime.utcnow(),
        )


@dataclass
class RegistrationCode:
    code: str
    account_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def claimed(self) -> bool:
        return self.account_id is not None
