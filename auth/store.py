"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and ledger tokens.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account / _row_to_token are the mappers.
Issuer, ledger, and route code never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Ledger tokens are stored as HMAC-SHA256 hashes only (see auth/tokens.py).
  A leaked database does not yield usable verification or reset links.

Single-live-token invariant:
  replace_token() deletes the live token for (account, purpose) and inserts the
  new one inside one transaction, under a process-level write lock. The partial
  UNIQUE index uq_ledger_tokens_live backs this at the DB level: a second live
  row for the same pair cannot be committed even if a caller bypasses the lock.
  replace_token_if_idle() reads the newest issue time inside that same
  transaction, so the resend cool-down also holds under concurrency.

  consume_token() is a compare-and-set on (id, token_hash, consumed_at IS NULL),
  so a token replaced after it was looked up can never be spent. The token update
  and the account update share one transaction, so there is no window where the
  token is spent but its effect has not landed (or the reverse).

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateEmail, DuplicateUsername
from auth.models import Account, LedgerToken, TokenPurpose, VerificationStatus
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(64), nullable=False, unique=True),
    Column("full_name", String(255), nullable=False),
    Column("secret_hash", Text, nullable=False),
    Column("roles", Text, nullable=False),  # JSON array, never empty
    Column("verification_status", String(16), nullable=False, server_default="unverified"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_tokens = Table(
    "ledger_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False),
    Column("purpose", String(16), nullable=False),  # "verify" | "reset"
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),  # NULL = live
    # Never reuse a deleted token's id.
    sqlite_autoincrement=True,
)

Index(
    "uq_ledger_tokens_live",
    _tokens.c.account_id,
    _tokens.c.purpose,
    unique=True,
    sqlite_where=_tokens.c.consumed_at.is_(None),
    postgresql_where=_tokens.c.consumed_at.is_(None),
)

Index("ix_ledger_tokens_account_purpose", _tokens.c.account_id, _tokens.c.purpose)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _encode_roles(roles) -> str:
    cleaned = sorted({r.strip() for r in roles if r and r.strip()})
    if not cleaned:
        raise ValueError("An account must hold at least one role.")
    return json.dumps(cleaned)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account and LedgerToken entities.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        account_id = store.create_account(Account(email=..., username=..., ...))
        account = store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        # Serializes ledger writes inside this process. SQLite would serialize
        # them anyway, but shared-cache in-memory DBs raise "table is locked"
        # instead of waiting.
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises DuplicateEmail / DuplicateUsername when either unique column is
        taken. The pre-check gives the precise field; the IntegrityError branch
        covers the race where a concurrent request wins between check and insert.
        """
        email = _normalize_email(account.email)
        if self.get_by_email(email) is not None:
            raise DuplicateEmail()
        if self.get_by_username(account.username) is not None:
            raise DuplicateUsername()
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _accounts.insert().values(
                        email=email,
                        username=account.username,
                        full_name=account.full_name,
                        secret_hash=account.secret_hash,
                        roles=_encode_roles(account.roles),
                        verification_status=VerificationStatus(account.verification_status).value,
                        created_at=now,
                        updated_at=now,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            if self.get_by_email(email) is not None:
                raise DuplicateEmail() from exc
            raise DuplicateUsername() from exc

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == _normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_username(self, username: str) -> Account | None:
        """Look up an account by exact username. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        """Return all accounts ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.username)).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_roles(self, account_id: int, roles) -> bool:
        """Replace the role set. Raises ValueError on an empty set.

        Returns True if a row was updated, False if account_id was not found.
        """
        encoded = _encode_roles(roles)
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(roles=encoded, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def set_status(self, account_id: int, status: VerificationStatus) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(verification_status=VerificationStatus(status).value, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def update_last_login(self, account_id: int) -> None:
        """Stamp the current UTC timestamp as last_login."""
        with self.engine.begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login=_now_iso()))

    def count_admins(self) -> int:
        """Return the number of open accounts holding the admin role.

        Used by PATCH /accounts/{id} to refuse removing or closing the last admin.
        """
        return sum(1 for a in self.list_accounts() if "admin" in a.roles and not a.is_closed)

    # ------------------------------------------------------------------
    # Ledger tokens
    # ------------------------------------------------------------------

    def replace_token(self, token: LedgerToken) -> int:
        """Make `token` the only live token for its (account, purpose). Returns its ID.

        Delete-then-insert in one transaction: replace, never append.
        """
        with self._write_lock, self.engine.begin() as conn:
            return self._replace_live(conn, token)

    def replace_token_if_idle(self, token: LedgerToken, cooldown: timedelta) -> float:
        """Like replace_token(), unless the pair was issued within `cooldown` of token.issued_at.

        The cool-down read and the replace run in one transaction under the
        write lock, so two concurrent callers can never both pass the check.
        Returns the seconds still to wait (nothing written), or 0.0 once issued.
        """
        purpose = TokenPurpose(token.purpose).value
        with self._write_lock, self.engine.begin() as conn:
            last = conn.execute(
                select(func.max(_tokens.c.issued_at)).where(
                    (_tokens.c.account_id == token.account_id) & (_tokens.c.purpose == purpose)
                )
            ).scalar()
            if last:
                remaining = (datetime.fromisoformat(last) + cooldown - token.issued_at).total_seconds()
                if remaining > 0:
                    return remaining
            self._replace_live(conn, token)
        return 0.0

    def _replace_live(self, conn, token: LedgerToken) -> int:
        purpose = TokenPurpose(token.purpose).value
        conn.execute(
            _tokens.delete().where(
                (_tokens.c.account_id == token.account_id)
                & (_tokens.c.purpose == purpose)
                & (_tokens.c.consumed_at.is_(None))
            )
        )
        result = conn.execute(
            _tokens.insert().values(
                account_id=token.account_id,
                purpose=purpose,
                token_hash=token.token_hash,
                issued_at=token.issued_at.isoformat(),
                expires_at=token.expires_at.isoformat(),
                consumed_at=None,
            )
        )
        return result.inserted_primary_key[0]

    def get_token_by_hash(self, token_hash: str, purpose: TokenPurpose) -> LedgerToken | None:
        """Look up a token by its HMAC hash within one ledger. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select().where(
                    (_tokens.c.token_hash == token_hash) & (_tokens.c.purpose == TokenPurpose(purpose).value)
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def get_live_token(self, account_id: int, purpose: TokenPurpose) -> LedgerToken | None:
        """Return the unconsumed token for (account, purpose), expired or not."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select().where(
                    (_tokens.c.account_id == account_id)
                    & (_tokens.c.purpose == TokenPurpose(purpose).value)
                    & (_tokens.c.consumed_at.is_(None))
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def count_live_tokens(self, account_id: int, purpose: TokenPurpose) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_tokens)
                .where(
                    (_tokens.c.account_id == account_id)
                    & (_tokens.c.purpose == TokenPurpose(purpose).value)
                    & (_tokens.c.consumed_at.is_(None))
                )
            ).scalar()
        return result or 0

    def consume_token(self, token: LedgerToken, consumed_at: datetime, **account_fields) -> bool:
        """Mark a token consumed and apply `account_fields` to its owner, atomically.

        Compare-and-set on the row id, the token hash and consumed_at IS NULL.
        Returns False (and changes nothing) when the token was consumed or
        replaced since the caller looked it up.
        """
        if "verification_status" in account_fields:
            account_fields["verification_status"] = VerificationStatus(account_fields["verification_status"]).value
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(
                _tokens.update()
                .where(
                    (_tokens.c.id == token.id)
                    & (_tokens.c.token_hash == token.token_hash)
                    & (_tokens.c.consumed_at.is_(None))
                )
                .values(consumed_at=consumed_at.isoformat())
            )
            if result.rowcount == 0:
                return False
            if account_fields:
                conn.execute(
                    _accounts.update()
                    .where(_accounts.c.id == token.account_id)
                    .values(updated_at=_now_iso(), **account_fields)
                )
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        username=row.username,
        full_name=row.full_name,
        secret_hash=row.secret_hash,
        roles=json.loads(row.roles),
        verification_status=VerificationStatus(row.verification_status),
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_token(row) -> LedgerToken:
    return LedgerToken(
        id=row.id,
        account_id=row.account_id,
        purpose=TokenPurpose(row.purpose),
        token_hash=row.token_hash,
        issued_at=datetime.fromisoformat(row.issued_at),
        expires_at=datetime.fromisoformat(row.expires_at),
        consumed_at=datetime.fromisoformat(row.consumed_at) if row.consumed_at else None,
    )
