"""
API request and response models for the SessionGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models only check shape (types, lengths). Business rules such as
password strength and username format live in auth/tokens.py so the CLI and
the API enforce exactly the same rules.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    username: str = Field(min_length=1, max_length=64)
    full_name: str = Field(min_length=1, max_length=255)
    secret: str = Field(max_length=255, json_schema_extra={"format": "password"})
    secret_confirm: str = Field(max_length=255, json_schema_extra={"format": "password"})


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    secret: str = Field(min_length=1, max_length=255)


class EmailRequest(BaseModel):
    """Body for POST /verify/resend and POST /reset/request."""

    email: str = Field(min_length=1, max_length=255)


class VerifyConfirmRequest(BaseModel):
    token: str = Field(min_length=1, max_length=255)


class ResetConfirmRequest(BaseModel):
    token: str = Field(min_length=1, max_length=255)
    secret: str = Field(max_length=255)
    secret_confirm: str = Field(max_length=255)


class AccountPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/accounts/{id}. Admin only."""

    roles: Optional[list[str]] = Field(default=None, min_length=1, max_length=20)
    closed: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """The client-visible subset of an Account. Never carries the secret hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: str
    full_name: str
    roles: list[str]
    verified: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        return cls(
            id=account.id,
            email=account.email,
            username=account.username,
            full_name=account.full_name,
            roles=list(account.roles),
            verified=account.is_verified,
            created_at=account.created_at or "",
            updated_at=account.updated_at or "",
        )


class AccountAdminResponse(UserResponse):
    """Admin listing row: adds status and last login."""

    verification_status: str
    last_login: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountAdminResponse":
        base = UserResponse.from_account(account).model_dump()
        return cls(
            **base,
            verification_status=account.verification_status.value,
            last_login=account.last_login,
        )


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: UserResponse


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    credential: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse


class MessageResponse(BaseModel):
    """Generic acknowledgement. Enumeration-sensitive endpoints always return this shape."""

    model_config = ConfigDict(frozen=True)

    message: str


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload. `code` is always a core.errors.ErrorKind value."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    fields: Optional[dict[str, list[str]]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
