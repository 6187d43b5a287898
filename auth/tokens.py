"""
auth/tokens.py -- Token Issuer: secret hashing, bearer credentials, registration,
and the opaque values handed out by the ledgers.

Security design decisions:
  Credentials: python-jose with HS256. Signed with SECRET_KEY; carry the account
       id (sub), username, roles, iat and exp. They are stateless: nothing is
       recorded server-side, so there is no revocation list. Compromise is bounded
       by TOKEN_EXPIRE_SECONDS and by the clients tearing the session down on the
       first rejected request.

  Secrets: bcrypt (direct usage, no passlib wrapper). Its cost factor makes
       brute force of low-entropy passwords expensive. _DUMMY_HASH enables timing
       equalization in authenticate_account() so response time does not reveal
       whether an email is registered.

  Ledger tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw) so lookup is O(1) and a leaked table holds
       no usable links. bcrypt's slowness is unnecessary at this entropy.

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import (
    AccountClosed,
    AccountUnverified,
    CredentialExpired,
    CredentialMalformed,
    InvalidCredentials,
    SecretMismatch,
    ValidationFailed,
    WeakSecret,
)
from auth.models import DEFAULT_ROLES, Account, CredentialClaims, VerificationStatus
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("sessiongate.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,32}$")

# bcrypt only looks at the first 72 bytes; newer releases refuse longer input.
_BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Secret hashing (bcrypt)
# ---------------------------------------------------------------------------


def hash_secret(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext secret."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_secret(plain: str, hashed: str) -> bool:
    """Return True if the plaintext secret matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def validate_secret(plain: str, confirmation: str | None = None) -> None:
    """Raise WeakSecret / SecretMismatch if the secret cannot be accepted."""
    if len(plain) < _settings.min_secret_length:
        raise WeakSecret(f"The password must be at least {_settings.min_secret_length} characters long.")
    if len(plain.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise WeakSecret(f"The password must be at most {_BCRYPT_MAX_BYTES} bytes long.")
    if plain.strip() == "":
        raise WeakSecret()
    if confirmation is not None and not hmac.compare_digest(plain.encode("utf-8"), confirmation.encode("utf-8")):
        raise SecretMismatch()


# Computed once at module load so the first login attempt is not measurably
# slower than later ones. Always call verify_secret() even when the email does
# not exist.
_DUMMY_HASH: str = hash_secret("sessiongate_timing_dummy")


# ---------------------------------------------------------------------------
# Bearer credentials (JWT)
# ---------------------------------------------------------------------------


def create_access_token(account: Account, expire_seconds: int = 0, now: datetime | None = None) -> str:
    """Encode a signed credential for `account`.

    Args:
        account:        The authenticated account; must have an id and roles.
        expire_seconds: Lifetime in seconds. 0 (default) uses
                        Settings.token_expire_seconds.
        now:            Issue time override, for tests.
    """
    if account.id is None:
        raise ValueError("Cannot issue a credential for an unsaved account.")
    issued = now or datetime.now(timezone.utc)
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    payload = {
        "sub": str(account.id),
        "username": account.username,
        "roles": list(account.roles),
        "iat": issued,
        "exp": issued + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def validate_credential(token: str) -> CredentialClaims:
    """Verify a credential and return its claims.

    Raises CredentialExpired when the signature is valid but exp has passed,
    CredentialMalformed for anything else (bad signature, garbage, missing claims).
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise CredentialExpired() from exc
    except JWTError as exc:
        raise CredentialMalformed() from exc

    try:
        account_id = int(payload["sub"])
        roles = tuple(str(r) for r in payload["roles"])
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as exc:
        raise CredentialMalformed() from exc
    return CredentialClaims(
        account_id=account_id,
        username=str(payload.get("username", "")),
        roles=roles,
        expires_at=expires_at,
    )


# ---------------------------------------------------------------------------
# Authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_account(store: AccountStore, email: str, secret: str) -> Account:
    """Check an email/secret pair with timing equalization. Returns the Account.

    Always runs bcrypt whether or not the account exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as a real check)
    - Wrong secret:  bcrypt runs against the real hash (same cost)

    Status (unverified / closed) is only reported after the secret matched, so a
    caller without the secret learns nothing about the account.
    """
    account = store.get_by_email(email)
    if account is None:
        # Equalize timing -- do NOT return early before running bcrypt
        verify_secret(secret, _DUMMY_HASH)
        raise InvalidCredentials()
    if not verify_secret(secret, account.secret_hash):
        raise InvalidCredentials()
    if account.is_closed:
        raise AccountClosed()
    if not account.is_verified:
        raise AccountUnverified()
    return account


def authenticate(store: AccountStore, email: str, secret: str) -> str:
    """Authenticate and return a fresh bearer credential."""
    account = authenticate_account(store, email, secret)
    store.update_last_login(account.id)
    logger.info("Account %d authenticated", account.id)
    return create_access_token(account)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register(
    store: AccountStore,
    email: str,
    username: str,
    full_name: str,
    secret: str,
    secret_confirm: str | None = None,
    roles=DEFAULT_ROLES,
) -> Account:
    """Create an unverified account. Raises a ValidationFailed subclass on bad input.

    Registration never authenticates and never issues a verification token by
    itself; the caller asks the VerificationLedger for one.
    """
    email = email.strip().lower()
    username = username.strip()
    full_name = full_name.strip()
    if not _EMAIL_RE.match(email):
        raise ValidationFailed("The email address format is not valid.", field="email")
    if not full_name:
        raise ValidationFailed("Full name is required.", field="full_name")
    if not _USERNAME_RE.match(username):
        raise ValidationFailed(
            "Username must be 3-32 characters: letters, numbers and underscores only.",
            field="username",
        )
    validate_secret(secret, secret_confirm)

    account = Account(
        email=email,
        username=username,
        full_name=full_name,
        secret_hash=hash_secret(secret),
        roles=list(roles),
        verification_status=VerificationStatus.UNVERIFIED,
    )
    account.id = store.create_account(account)
    logger.info("Account %d registered", account.id)
    return store.get_by_id(account.id) or account


# ---------------------------------------------------------------------------
# Ledger token values
# ---------------------------------------------------------------------------


def generate_ledger_token() -> str:
    """Return a new URL-safe opaque token (256 bits of entropy)."""
    return secrets.token_urlsafe(32)


def hash_ledger_token(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string.

    Deterministic, so the store can look a token up by hash; keyed, so the
    stored hashes are useless without SECRET_KEY.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()
