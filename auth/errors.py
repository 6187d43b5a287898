"""
auth/errors.py -- Exceptions raised by the store, the issuer, and both ledgers.

Each exception carries an ErrorKind. The API layer turns any AuthError into the
standard error envelope with one exception handler, so route code never builds
error responses for these cases by hand.

Messages here are developer-facing English. They are safe to put on the wire
(no account state is revealed that the kind does not already reveal) but the
clients render their own localized text from the kind.

Layer rule: imports only from core/.
"""

from __future__ import annotations

from core.errors import ErrorKind


class AuthError(Exception):
    """Base class for every failure raised by auth/."""

    kind: ErrorKind = ErrorKind.SERVER_ERROR
    default_message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Field-level validation (422)
# ---------------------------------------------------------------------------


class ValidationFailed(AuthError):
    """A request field failed a business rule. `field` names the offending input."""

    kind = ErrorKind.VALIDATION
    default_message = "Validation failed."
    field: str = "__all__"
    # Stable machine-readable cause, sent as error.detail so clients can localize it.
    reason: str = "invalid"

    def __init__(self, message: str | None = None, field: str | None = None) -> None:
        super().__init__(message)
        if field is not None:
            self.field = field

    @property
    def fields(self) -> dict[str, list[str]]:
        return {self.field: [self.message]}


class DuplicateEmail(ValidationFailed):
    default_message = "An account with this email already exists."
    field = "email"
    reason = "duplicate_email"


class DuplicateUsername(ValidationFailed):
    default_message = "This username is already taken."
    field = "username"
    reason = "duplicate_username"


class WeakSecret(ValidationFailed):
    default_message = "The password does not meet the minimum requirements."
    field = "secret"
    reason = "weak_secret"


class SecretMismatch(ValidationFailed):
    default_message = "The passwords do not match."
    field = "secret_confirm"
    reason = "secret_mismatch"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    """Unknown email and wrong secret both land here -- deliberately indistinguishable."""

    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "Invalid email or password."


class AccountUnverified(AuthError):
    kind = ErrorKind.ACCOUNT_UNVERIFIED
    default_message = "This account has not been verified yet."


class AccountClosed(AuthError):
    kind = ErrorKind.ACCOUNT_CLOSED
    default_message = "This account has been closed."


class CredentialExpired(AuthError):
    kind = ErrorKind.TOKEN_EXPIRED
    default_message = "The session has expired."


class CredentialMalformed(AuthError):
    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "The credential is not valid."


# ---------------------------------------------------------------------------
# Ledger tokens
# ---------------------------------------------------------------------------


class TokenNotFound(AuthError):
    kind = ErrorKind.TOKEN_NOT_FOUND
    default_message = "The link is invalid."


class TokenExpired(AuthError):
    kind = ErrorKind.TOKEN_EXPIRED
    default_message = "The link has expired."


class TokenAlreadyConsumed(AuthError):
    kind = ErrorKind.TOKEN_ALREADY_CONSUMED
    default_message = "The link has already been used."


class RateLimited(AuthError):
    kind = ErrorKind.RATE_LIMITED
    default_message = "An email was sent recently. Please wait before requesting another."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = max(int(retry_after), 1)


# ---------------------------------------------------------------------------
# Admin surface
# ---------------------------------------------------------------------------


class Forbidden(AuthError):
    kind = ErrorKind.FORBIDDEN
    default_message = "You do not have permission to perform this action."


class AccountNotFound(AuthError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Account not found."
