from __future__ import annotations

from typing import Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenwarden.logging import get_logger
from tokenwarden.storage.common import (
    account_from_row,
    generate_uuid,
    normalize_codes,
    registration_code_from_row,
    token_from_row,
)
from tokenwarden.storage.errors import ConstraintViolation, UnknownAccount
from tokenwarden.storage.models import (
    AccessLevel,
    Account,
    RegistrationCode,
    Token,
    VerificationState,
)

# Bounded re-reads when an insert-if-absent loses to a concurrent delete
_TOKEN_INSERT_ATTEMPTS = 3


class PostgresStore:
    """Postgres-backed credential store.

    Per-account security fields are written with a compare-and-set on
    ``account.version``; the single-token rule is the ``UNIQUE (account_id)``
    constraint on ``auth_token``.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    recovery_key_hash TEXT NOT NULL,
                    access_level TEXT NOT NULL DEFAULT 'unverified',
                    verification_code TEXT,
                    verification_state TEXT NOT NULL DEFAULT 'unset',
                    recovery_attempts INTEGER NOT NULL DEFAULT 0
                        CHECK (recovery_attempts >= 0),
                    parent_id TEXT REFERENCES account(id),
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_token (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL UNIQUE
                        REFERENCES account(id) ON DELETE CASCADE,
                    value TEXT NOT NULL UNIQUE,
                    issued_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS registration_code (
                    code TEXT PRIMARY KEY,
                    account_id TEXT UNIQUE REFERENCES account(id),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        account_id = generate_uuid()
        state = (
            VerificationState.ACTIVE if verification_code else VerificationState.UNSET
        )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        id, username, password_hash, recovery_key_hash, access_level,
                        verification_code, verification_state, parent_id
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        username,
                        password_hash,
                        recovery_key_hash,
                        access_level.name.lower(),
                        verification_code,
                        state.value,
                        parent_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        except errors.ForeignKeyViolation:
            raise UnknownAccount(parent_id or "")
        return account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return account_from_row(row) if row else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE username = %s", (username,)
            ).fetchone()
        return account_from_row(row) if row else None

    def list_accounts(self) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM account ORDER BY created_at").fetchall()
        return [account_from_row(row) for row in rows]

    def save_account(self, account: Account) -> bool:
        """Compare-and-set the mutable fields of ``account`` on its version."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET password_hash = %s,
                    recovery_key_hash = %s,
                    access_level = %s,
                    verification_code = %s,
                    verification_state = %s,
                    recovery_attempts = %s,
                    version = version + 1,
                    updated_at = now()
                WHERE id = %s AND version = %s
                RETURNING version, updated_at
                """,
                (
                    account.password_hash,
                    account.recovery_key_hash,
                    account.access_level.name.lower(),
                    account.verification_code,
                    account.verification_state.value,
                    account.recovery_attempts,
                    account.id,
                    account.version,
                ),
            ).fetchone()
            if row is None:
                exists = conn.execute(
                    "SELECT 1 AS present FROM account WHERE id = %s", (account.id,)
                ).fetchone()
                if not exists:
                    raise UnknownAccount(account.id)
                return False
        account.version = int(row["version"])
        account.updated_at = row["updated_at"]
        return True

    # tokens
    def get_token_for_account(self, account_id: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE account_id = %s", (account_id,)
            ).fetchone()
        return token_from_row(row) if row else None

    def get_token_by_value(self, value: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE value = %s", (value,)
            ).fetchone()
        return token_from_row(row) if row else None

    def insert_token_if_absent(self, token: Token) -> Token:
        """Insert ``token`` or return the row another writer already committed."""
        for _ in range(_TOKEN_INSERT_ATTEMPTS):
            try:
                with self._connect() as conn:
                    row = conn.execute(
                        """
                        INSERT INTO auth_token (id, account_id, value, issued_at)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (account_id) DO NOTHING
                        RETURNING *
                        """,
                        (token.id, token.account_id, token.value, token.issued_at),
                    ).fetchone()
                    if row is None:
                        row = conn.execute(
                            "SELECT * FROM auth_token WHERE account_id = %s",
                            (token.account_id,),
                        ).fetchone()
            except errors.ForeignKeyViolation:
                raise UnknownAccount(token.account_id)
            except errors.UniqueViolation:
                raise ConstraintViolation("token value collision", {"field": "value"})
            if row is not None:
                return token_from_row(row)
            # the conflicting row was deleted before the re-read
            self.logger.warning("token_insert_reread_empty", account_id=token.account_id)
        raise RuntimeError(
            f"could not settle token row for account {token.account_id}"
        )

    def delete_token(self, account_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_token WHERE account_id = %s RETURNING id",
                (account_id,),
            ).fetchone()
        return row is not None

    # registration code pool
    def add_registration_codes(self, codes: Iterable[str]) -> int:
        added = 0
        with self._connect() as conn:
            for code in normalize_codes(codes):
                cur = conn.execute(
                    """
                    INSERT INTO registration_code (code) VALUES (%s)
                    ON CONFLICT (code) DO NOTHING
                    """,
                    (code,),
                )
                added += max(cur.rowcount, 0)
        return added

    def get_registration_code(self, code: str) -> Optional[RegistrationCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM registration_code WHERE code = %s", (code,)
            ).fetchone()
        return registration_code_from_row(row) if row else None

    def claim_registration_code(self, code: str, account_id: str) -> bool:
        # re-claiming a code the account already holds is a no-op success
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE registration_code SET account_id = %s
                    WHERE code = %s AND (account_id IS NULL OR account_id = %s)
                    RETURNING code
                    """,
                    (account_id, code, account_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise UnknownAccount(account_id)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "account already holds a registration code", {"account_id": account_id}
            )
        return row is not None

    def list_registration_codes(self) -> List[RegistrationCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM registration_code ORDER BY created_at"
            ).fetchall()
        return [registration_code_from_row(row) for row in rows]
