"""
core/errors.py -- The closed ErrorKind taxonomy shared by server and clients.

Every failure that crosses a layer boundary is reduced to one of these kinds.
The server puts the value on the wire as error.code; the Request Gateway reads
it back and the Session Client picks a user-facing message from it. Nothing
above the gateway ever branches on a raw HTTP status code.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or client/.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_UNVERIFIED = "account_unverified"
    ACCOUNT_CLOSED = "account_closed"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_ALREADY_CONSUMED = "token_already_consumed"
    TOKEN_NOT_FOUND = "token_not_found"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK_UNREACHABLE = "network_unreachable"
    # Admin surface only -- never produced by the login/verify/reset flows.
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"

    @property
    def retryable(self) -> bool:
        """True when the user may simply try the same action again."""
        return self in (ErrorKind.NETWORK_UNREACHABLE, ErrorKind.SERVER_ERROR)

    @property
    def terminal_for_token(self) -> bool:
        """True when the token that caused the error can never succeed; a new one is needed."""
        return self in (
            ErrorKind.TOKEN_EXPIRED,
            ErrorKind.TOKEN_ALREADY_CONSUMED,
            ErrorKind.TOKEN_NOT_FOUND,
        )

    @classmethod
    def from_code(cls, code: str | None) -> ErrorKind | None:
        """Return the kind for a wire code, or None if the code is unknown."""
        if not code:
            return None
        try:
            return cls(code)
        except ValueError:
            return None


# HTTP status used for each kind on the server side. The gateway only uses
# this table as a fallback when a response carries no recognizable code.
HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.ACCOUNT_UNVERIFIED: 403,
    ErrorKind.ACCOUNT_CLOSED: 403,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_ALREADY_CONSUMED: 401,
    ErrorKind.TOKEN_NOT_FOUND: 401,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.SERVER_ERROR: 500,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
}
