from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign-key rule of the credential store is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class UnknownAccount(ConstraintViolation):
    """A write referenced an account id the store does not hold."""

    def __init__(self, account_id: str):
        super().__init__("account does not exist", {"account_id": account_id})


__all__ = ["ConstraintViolation", "UnknownAccount"]
