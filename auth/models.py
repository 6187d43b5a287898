"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and ledgers
do the work; these only own the shape.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

DEFAULT_ROLES: tuple[str, ...] = ("user",)


class VerificationStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    CLOSED = "closed"


class TokenPurpose(str, Enum):
    VERIFY = "verify"
    RESET = "reset"


@dataclass
class Account:
    """An identity that can authenticate against SessionGate.

    secret_hash is the bcrypt hash; the plaintext is never stored or returned.
    roles is never empty -- AccountStore rejects writes that would empty it.
    """

    email: str
    username: str
    full_name: str
    secret_hash: str
    roles: list[str] = field(default_factory=lambda: list(DEFAULT_ROLES))
    verification_status: VerificationStatus = VerificationStatus.UNVERIFIED
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED

    @property
    def is_closed(self) -> bool:
        return self.verification_status == VerificationStatus.CLOSED


@dataclass
class LedgerToken:
    """One single-use, expiring token owned by a ledger.

    Only the HMAC of the raw token is stored. consumed_at is None while the
    token is live; at most one live token exists per (account_id, purpose).
    """

    account_id: int
    purpose: TokenPurpose
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    consumed_at: datetime | None = None
    id: int | None = None

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class CredentialClaims:
    """The verified contents of a bearer credential."""

    account_id: int
    username: str
    roles: tuple[str, ...]
    expires_at: datetime
