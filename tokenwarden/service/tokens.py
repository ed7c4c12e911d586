from __future__ import annotations

import secrets
from typing import Optional

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import NotLoggedInError
from tokenwarden.storage.models import Account, Token

logger = get_logger(__name__)


class TokenRegistry:
    """At most one live bearer token per account.

    Both guarantees come from the store: ``insert_token_if_absent`` is atomic
    on the account id, and ``delete_token`` reports whether a row existed.
    """

    def __init__(self, store, *, token_bytes: int = 32) -> None:
        self.store = store
        self.token_bytes = token_bytes

    def _generate_value(self) -> str:
        return secrets.token_urlsafe(self.token_bytes)

    def get_or_create(self, account: Account) -> Token:
        existing = self.store.get_token_for_account(account.id)
        if existing is not None:
            return existing
        candidate = Token.new(account.id, self._generate_value())
        stored = self.store.insert_token_if_absent(candidate)
        if stored.id == candidate.id:
            logger.info("token_issued", account_id=account.id, token_row_id=stored.id)
        else:
            # a concurrent login or recovery committed first
            logger.info("token_issue_race_lost", account_id=account.id)
        return stored

    def revoke(self, account: Account) -> None:
        if not self.store.delete_token(account.id):
            logger.warning("token_revoke_absent", account_id=account.id)
            raise NotLoggedInError()
        logger.info("token_revoked", account_id=account.id)

    def resolve(self, value: str) -> Optional[Token]:
        if not value:
            return None
        return self.store.get_token_by_value(value)
