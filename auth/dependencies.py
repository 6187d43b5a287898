"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Credentials arrive as an Authorization: Bearer <token> header. Both clients
(browser dashboard and mobile app) send the header; there is no cookie path.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises AuthError -> 401 if unauthenticated.
require_roles(*roles) wraps get_current_account() and raises Forbidden -> 403
when the account holds none of the required roles.

Layer rule: no imports from api/ or client/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from fastapi import Request

from auth.errors import AuthError, CredentialMalformed, Forbidden
from auth.models import Account
from auth.tokens import validate_credential


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_account(request: Request) -> Account | None:
    """Return the authenticated Account, or None on any failure. Never raises."""
    try:
        return get_current_account(request)
    except AuthError:
        return None


def get_current_account(request: Request) -> Account:
    """Require a valid, non-expired credential for an existing open account.

    Raises CredentialExpired / CredentialMalformed (both 401). A credential for
    a closed account is rejected like any other dead credential.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise CredentialMalformed("Authentication required.")
    claims = validate_credential(token)
    account = request.app.state.account_store.get_by_id(claims.account_id)
    if account is None:
        raise CredentialMalformed()
    if account.is_closed:
        raise CredentialMalformed("This account has been closed.")
    return account


def allow(current_roles: Iterable[str], required_roles: Iterable[str]) -> bool:
    """True when the two role sets intersect."""
    return bool(set(current_roles) & set(required_roles))


def require_roles(*required: str) -> Callable[[Request], Account]:
    """Build a dependency that admits accounts holding at least one of `required`.

    Roles are read from the store, not from the credential, so a role edit
    takes effect on the next request rather than at credential expiry.

    Use as a FastAPI dependency:
        @router.get("/accounts")
        async def route(account: Account = Depends(require_roles("admin", "manager"))): ...
    """

    def dependency(request: Request) -> Account:
        account = get_current_account(request)
        if not account.roles or not allow(account.roles, required):
            raise Forbidden()
        return account

    return dependency
