"""
auth/ledger.py -- Verification and Reset ledgers: single-use, expiring tokens.

Both ledgers share one mechanism (_Ledger) and differ only in TTL, link path,
and the effect applied when a token is consumed:

  VerificationLedger  TTL 24h  effect: account.verification_status = verified
  ResetLedger         TTL 1h   effect: account.secret_hash = bcrypt(new secret)

Per-account verification state machine:

  UNVERIFIED --issue--> PENDING --consume--> VERIFIED
                        PENDING --resend---> PENDING   (previous token replaced)

Rules shared by both ledgers:
  - issue() replaces the live token for the account (never appends).
  - Expiry is checked lazily when a token is presented; nothing sweeps.
  - consume checks, in order: unknown -> TokenNotFound, spent ->
    TokenAlreadyConsumed, past expiry -> TokenExpired. Spent is checked before
    expiry so a retry after success always reports TokenAlreadyConsumed.
  - Raw token values are returned to the caller and mailed; only their HMAC
    is stored.

Enumeration resistance:
  resend() and request_reset() never reveal whether an email is registered.
  resend() only raises RateLimited, and only for an account that actually had a
  recent issuance; request_reset() never raises at all.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum

from auth.errors import AccountClosed, AccountNotFound, RateLimited, TokenAlreadyConsumed, TokenExpired, TokenNotFound
from auth.mailer import LinkMailer, LoggingLinkMailer
from auth.models import Account, LedgerToken, TokenPurpose, VerificationStatus
from auth.store import AccountStore
from auth.tokens import generate_ledger_token, hash_ledger_token, hash_secret, validate_secret
from core.config import get_settings

logger = logging.getLogger("sessiongate.ledger")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationState(str, Enum):
    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"
    CLOSED = "closed"


class _Ledger(ABC):
    purpose: TokenPurpose
    link_path: str

    def __init__(
        self,
        store: AccountStore,
        mailer: LinkMailer | None = None,
        ttl_seconds: int = 0,
        cooldown_seconds: int | None = None,
        link_base_url: str | None = None,
        clock: Clock = utcnow,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.mailer = mailer or LoggingLinkMailer()
        self.ttl = timedelta(seconds=ttl_seconds or self._default_ttl(settings))
        self.cooldown = timedelta(
            seconds=settings.resend_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        )
        self.link_base_url = (link_base_url or settings.link_base_url).rstrip("/")
        self.clock = clock

    @abstractmethod
    def _default_ttl(self, settings) -> int: ...

    @abstractmethod
    def _send(self, account: Account, link: str) -> None: ...

    # ------------------------------------------------------------------
    # Shared mechanism
    # ------------------------------------------------------------------

    def link_for(self, raw_token: str) -> str:
        return f"{self.link_base_url}{self.link_path}/{raw_token}"

    def issue(self, account_id: int) -> str:
        """Mint a token for the account, replacing any live one, and mail its link.

        Returns the raw token value. Raises AccountNotFound / AccountClosed.
        """
        account = self.store.get_by_id(account_id)
        if account is None:
            raise AccountNotFound()
        if account.is_closed:
            raise AccountClosed()
        raw, token = self._mint(account_id)
        self.store.replace_token(token)
        self._issued(account, raw)
        return raw

    def _issue_if_idle(self, account: Account) -> float:
        """Issue and mail a token unless the account is inside its cool-down.

        Returns the seconds left to wait, or 0.0 when a token was issued.
        """
        raw, token = self._mint(account.id)
        remaining = self.store.replace_token_if_idle(token, self.cooldown)
        if remaining > 0:
            return remaining
        self._issued(account, raw)
        return 0.0

    def _mint(self, account_id: int) -> tuple[str, LedgerToken]:
        raw = generate_ledger_token()
        now = self.clock()
        token = LedgerToken(
            account_id=account_id,
            purpose=self.purpose,
            token_hash=hash_ledger_token(raw),
            issued_at=now,
            expires_at=now + self.ttl,
        )
        return raw, token

    def _issued(self, account: Account, raw: str) -> None:
        logger.info(
            "Issued %s token for account %d (expires in %ds)",
            self.purpose.value,
            account.id,
            self.ttl.total_seconds(),
        )
        self._send(account, self.link_for(raw))

    def _lookup(self, raw_token: str) -> LedgerToken:
        token = self.store.get_token_by_hash(hash_ledger_token(raw_token), self.purpose)
        if token is None:
            raise TokenNotFound()
        if token.consumed:
            raise TokenAlreadyConsumed()
        if token.is_expired(self.clock()):
            raise TokenExpired()
        return token

    def _consume(self, token: LedgerToken, **account_fields) -> Account:
        account = self.store.get_by_id(token.account_id)
        if account is None:
            raise TokenNotFound()
        if account.is_closed:
            raise AccountClosed()
        if not self.store.consume_token(token, self.clock(), **account_fields):
            # Lost the compare-and-set: replaced (row gone) or spent by a concurrent consume.
            if self.store.get_token_by_hash(token.token_hash, self.purpose) is None:
                raise TokenNotFound()
            raise TokenAlreadyConsumed()
        logger.info("Consumed %s token for account %d", self.purpose.value, token.account_id)
        return self.store.get_by_id(token.account_id) or account


class VerificationLedger(_Ledger):
    """Issues and consumes email-verification tokens (TTL 24h by default)."""

    purpose = TokenPurpose.VERIFY
    link_path = "/auth/verify-email"

    def _default_ttl(self, settings) -> int:
        return settings.verification_ttl_seconds

    def _send(self, account: Account, link: str) -> None:
        self.mailer.send_verification_link(account, link, ttl_hours=max(int(self.ttl.total_seconds() // 3600), 1))

    def consume(self, raw_token: str) -> Account:
        """Verify the owning account. Raises TokenNotFound / TokenExpired / TokenAlreadyConsumed."""
        token = self._lookup(raw_token)
        return self._consume(token, verification_status=VerificationStatus.VERIFIED)

    def resend(self, email: str) -> None:
        """Issue a fresh token for an unverified account, subject to the cool-down.

        Unknown, already-verified and closed emails return silently: the caller
        reports one generic outcome for all of them.
        """
        account = self.store.get_by_email(email)
        if account is None or account.verification_status != VerificationStatus.UNVERIFIED:
            logger.info("Verification resend skipped (no eligible account)")
            return
        remaining = self._issue_if_idle(account)
        if remaining > 0:
            raise RateLimited(retry_after=math.ceil(remaining))

    def state(self, account_id: int) -> VerificationState:
        account = self.store.get_by_id(account_id)
        if account is None:
            raise AccountNotFound()
        if account.is_closed:
            return VerificationState.CLOSED
        if account.is_verified:
            return VerificationState.VERIFIED
        live = self.store.get_live_token(account_id, self.purpose)
        if live is not None and not live.is_expired(self.clock()):
            return VerificationState.PENDING
        return VerificationState.UNVERIFIED


class ResetLedger(_Ledger):
    """Issues and consumes password-reset tokens (TTL 1h by default)."""

    purpose = TokenPurpose.RESET
    link_path = "/auth/reset-password"

    def _default_ttl(self, settings) -> int:
        return settings.reset_ttl_seconds

    def _send(self, account: Account, link: str) -> None:
        self.mailer.send_reset_link(account, link, ttl_minutes=max(int(self.ttl.total_seconds() // 60), 1))

    def request_reset(self, email: str) -> None:
        """Issue a reset link if the account exists. Never raises, never reveals."""
        account = self.store.get_by_email(email)
        if account is None or account.is_closed:
            logger.info("Password reset request skipped (no eligible account)")
            return
        if self._issue_if_idle(account) > 0:
            logger.info("Password reset request for account %d inside cool-down; not re-issued", account.id)

    def confirm_reset(self, raw_token: str, new_secret: str, confirmation: str | None = None) -> Account:
        """Store a new secret for the token's owner and spend the token, atomically.

        Token errors win over secret errors: an expired link is reported as
        expired even when the new password is also too short.
        """
        token = self._lookup(raw_token)
        validate_secret(new_secret, confirmation)
        return self._consume(token, secret_hash=hash_secret(new_secret))
