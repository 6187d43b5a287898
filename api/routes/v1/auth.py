"""
api/routes/v1/auth.py -- Authentication, verification, and reset endpoints.

Routes:
  POST  /api/v1/auth/register          -- create an unverified account; 201 | 422
  POST  /api/v1/auth/login             -- email + secret -> bearer credential; 200 | 401 | 403
  GET   /api/v1/auth/me                -- current user (requires auth); 200 | 401
  POST  /api/v1/auth/logout            -- acknowledge logout; always 200
  POST  /api/v1/auth/verify/resend     -- (re)issue a verification link; 200 generic | 429
  POST  /api/v1/auth/verify/confirm    -- consume a verification token; 200 | 401
  POST  /api/v1/auth/reset/request     -- issue a reset link; 200 generic, always
  POST  /api/v1/auth/reset/confirm     -- consume a reset token + set secret; 200 | 401 | 422
  GET   /api/v1/auth/providers         -- OAuth placeholder; always []
  GET   /api/v1/auth/accounts          -- list accounts (admin or manager)
  PATCH /api/v1/auth/accounts/{id}     -- edit roles / close account (admin)

Security:
  authenticate_account() provides timing equalization -- use it, never inline.
  Login is not rate limited and never locks an account.
  /verify/resend and /reset/request return one generic message whatever the
  email's state, so neither endpoint can be used to enumerate accounts.
  Cache-Control: no-store on every response that carries a credential.
  PATCH /accounts/{id} refuses to close the caller's own account and refuses
  to leave the system without an open admin.

Errors are raised as auth.errors.AuthError subclasses; api/main.py turns them
into the standard envelope.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AccountAdminResponse,
    AccountPatch,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    RegisterRequest,
    RegisterResponse,
    ResetConfirmRequest,
    UserResponse,
    VerifyConfirmRequest,
)
from auth.dependencies import get_current_account, require_roles, try_get_current_account
from auth.errors import AccountNotFound, ValidationFailed
from auth.ledger import ResetLedger, VerificationLedger
from auth.models import Account, VerificationStatus
from auth.store import AccountStore
from auth.tokens import authenticate_account, create_access_token, register
from core.config import get_settings

logger = logging.getLogger("sessiongate.api.auth")

_settings = get_settings()

RESEND_GENERIC_MESSAGE = "If the email exists and is not verified, you will receive instructions to confirm your account."
RESET_GENERIC_MESSAGE = "If the email exists, a password reset link has been sent."

# Auth policy:
# - POST  /auth/register, /auth/login:              public
# - POST  /auth/logout:                             public -- nothing server-side to revoke
# - POST  /auth/verify/*, /auth/reset/*:            public -- the token is the proof
# - GET   /auth/providers:                          public
# - GET   /auth/me:                                 requires auth (get_current_account)
# - GET   /auth/accounts:                           requires admin or manager
# - PATCH /auth/accounts/{id}:                      requires admin
router = APIRouter()


def _no_store(model) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=model.model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register_account(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an unverified account. Never authenticates.

    Each business-rule failure is reported field by field (422, error.fields).
    """
    store: AccountStore = request.app.state.account_store
    account = register(
        store,
        email=body.email,
        username=body.username,
        full_name=body.full_name,
        secret=body.secret,
        secret_confirm=body.secret_confirm,
    )
    return RegisterResponse(message="Account created.", user=UserResponse.from_account(account))


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and secret; return a bearer credential.

    Unknown email and wrong secret produce the same invalid_credentials error.
    Unverified and closed accounts are only reported once the secret matched.
    """
    store: AccountStore = request.app.state.account_store
    account = authenticate_account(store, body.email, body.secret)
    store.update_last_login(account.id)
    token = create_access_token(account)
    logger.info("Login succeeded for account %d", account.id)
    return _no_store(
        LoginResponse(
            credential=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.token_expire_seconds,
            user=UserResponse.from_account(account),
        )
    )


@router.get("/auth/me", response_model=MeResponse)
def me(current: Account = Depends(get_current_account)) -> JSONResponse:
    """Return the current user. Clients call this to validate a restored credential."""
    return _no_store(MeResponse(user=UserResponse.from_account(current)))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> MessageResponse:
    """Acknowledge logout.

    Credentials are stateless, so there is nothing to revoke; clients drop the
    credential themselves whether or not this call succeeds.
    """
    account = try_get_current_account(request)
    if account is not None:
        logger.info("Logout for account %d", account.id)
    return MessageResponse(message="Logged out.")


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@limiter.limit(_settings.resend_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/verify/resend", response_model=MessageResponse)
def resend_verification(request: Request, body: EmailRequest) -> MessageResponse:
    """(Re)issue a verification link. 429 inside the per-account cool-down."""
    ledger: VerificationLedger = request.app.state.verification_ledger
    ledger.resend(body.email)
    return MessageResponse(message=RESEND_GENERIC_MESSAGE)


@router.post("/auth/verify/confirm", response_model=MessageResponse)
def confirm_verification(request: Request, body: VerifyConfirmRequest) -> MessageResponse:
    """Consume a verification token. 401 for unknown, expired, or spent tokens."""
    ledger: VerificationLedger = request.app.state.verification_ledger
    ledger.consume(body.token)
    return MessageResponse(message="Email verified successfully.")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/reset/request", response_model=MessageResponse)
def request_reset(request: Request, body: EmailRequest) -> MessageResponse:
    """Issue a reset link if the account exists. Identical response either way."""
    ledger: ResetLedger = request.app.state.reset_ledger
    ledger.request_reset(body.email)
    return MessageResponse(message=RESET_GENERIC_MESSAGE)


@router.post("/auth/reset/confirm", response_model=MessageResponse)
def confirm_reset(request: Request, body: ResetConfirmRequest) -> MessageResponse:
    """Set a new secret with a reset token. 401 for bad tokens, 422 for a weak secret."""
    ledger: ResetLedger = request.app.state.reset_ledger
    ledger.confirm_reset(body.token, body.secret, body.secret_confirm)
    return MessageResponse(message="Password reset successfully.")


# ---------------------------------------------------------------------------
# OAuth placeholder
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Social login is not offered. The sign-in screens call this and render no buttons."""
    return []


# ---------------------------------------------------------------------------
# Account administration
# ---------------------------------------------------------------------------


@router.get("/auth/accounts", response_model=list[AccountAdminResponse])
def list_accounts(
    request: Request,
    current: Account = Depends(require_roles("admin", "manager")),
) -> list[AccountAdminResponse]:
    """List all accounts. Admin or manager."""
    store: AccountStore = request.app.state.account_store
    return [AccountAdminResponse.from_account(a) for a in store.list_accounts()]


@router.patch("/auth/accounts/{account_id}", response_model=AccountAdminResponse)
def update_account(
    request: Request,
    account_id: int,
    body: AccountPatch,
    current: Account = Depends(require_roles("admin")),
) -> AccountAdminResponse:
    """Replace an account's roles and/or close it. Admin only.

    Prevents:
      - Closing one's own account.
      - Removing the admin role from, or closing, the last open admin.
    """
    store: AccountStore = request.app.state.account_store
    target = store.get_by_id(account_id)
    if target is None:
        raise AccountNotFound()
    if body.roles is None and body.closed is None:
        raise ValidationFailed("No fields to update.")

    is_last_admin = "admin" in target.roles and not target.is_closed and store.count_admins() <= 1
    if body.closed:
        if target.id == current.id:
            raise ValidationFailed("You cannot close your own account.", field="closed")
        if is_last_admin:
            raise ValidationFailed("Cannot close the last admin account.", field="closed")
    if body.roles is not None:
        roles = [r.strip() for r in body.roles if r.strip()]
        if not roles:
            raise ValidationFailed("An account must hold at least one role.", field="roles")
        if is_last_admin and "admin" not in roles:
            raise ValidationFailed("Cannot remove the admin role from the last admin.", field="roles")
        store.update_roles(account_id, roles)
    if body.closed is True:
        store.set_status(account_id, VerificationStatus.CLOSED)
    elif body.closed is False and target.is_closed:
        # Reopened accounts must prove their email again.
        store.set_status(account_id, VerificationStatus.UNVERIFIED)

    logger.info("Account %d updated by admin %d", account_id, current.id)
    updated = store.get_by_id(account_id)
    return AccountAdminResponse.from_account(updated)
