"""
API request and response models for tokengate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from auth.models import SessionTokens, TwoFactorPending, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
NAME_PATTERN = r"^[\w'.\- ]+$"


def _check_password_strength(value: str) -> str:
    """Require at least one letter and one digit or symbol."""
    if not any(c.isalpha() for c in value):
        raise ValueError("Password must contain a letter.")
    if not any(not c.isalpha() for c in value):
        raise ValueError("Password must contain a digit or symbol.")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class NewPasswordFields(BaseModel):
    """password + password_confirm pair shared by every body that sets a password."""

    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    password_confirm: str = Field(max_length=PASSWORD_MAX_LENGTH)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.password_confirm:
            raise ValueError("Passwords do not match.")
        return self


class RegisterRequest(NewPasswordFields):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    name: str = Field(min_length=3, max_length=100, pattern=NAME_PATTERN)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    No length rules here: a login must fail with invalid_credentials, not a
    validation error that hints at the password policy.
    """

    email: str = Field(min_length=1, max_length=200)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class TokenRequest(BaseModel):
    """Request body carrying a single emailed token (confirmation)."""

    token: str = Field(min_length=1, max_length=2048)


class TwoFactorVerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/2fa/verify."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: int
    code: str = Field(pattern=r"^\d{6}$")


class RefreshRequest(BaseModel):
    """Optional body for /refresh and /logout when the cookie is unavailable."""

    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class ResetPasswordRequest(NewPasswordFields):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(min_length=1, max_length=2048)


class ChangePasswordRequest(NewPasswordFields):
    """Request body for POST /api/v1/auth/update-password.

    Accounts created through an external provider have no old password;
    they set a first one through the reset email instead.
    """

    old_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class TwoFactorUpdateRequest(BaseModel):
    enabled: bool
    password: Optional[str] = Field(default=None, max_length=PASSWORD_MAX_LENGTH)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/me."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=3, max_length=100, pattern=NAME_PATTERN)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    """Response for a completed login, verified code, or refresh.

    The refresh token is also set as an httpOnly cookie; returning it in the
    body lets non-browser clients use it too.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    user_id: int

    @classmethod
    def from_session(cls, session: SessionTokens) -> "SessionResponse":
        return cls(
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            expires_in=session.access_expires_in,
            refresh_expires_in=session.refresh_expires_in,
            user_id=session.user_id,
        )


class TwoFactorPendingResponse(BaseModel):
    """Response (202) when a login must be completed with an emailed code."""

    model_config = ConfigDict(frozen=True)

    status: str = "two_factor_required"
    user_id: int
    expires_in: int

    @classmethod
    def from_pending(cls, pending: TwoFactorPending) -> "TwoFactorPendingResponse":
        return cls(user_id=pending.user_id, expires_in=pending.expires_in)


class UserResponse(BaseModel):
    """Public profile of a user. Never includes the password hash or version."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    confirmed: bool
    two_factor: bool
    has_password: bool
    providers: list[str] = Field(default_factory=list)
    created_at: str

    @classmethod
    def from_user(cls, user: User, providers: Optional[list[str]] = None) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            confirmed=user.confirmed,
            two_factor=user.two_factor,
            has_password=user.hashed_password is not None,
            providers=providers or [],
            created_at=user.created_at or "",
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class OAuthProviderInfo(BaseModel):
    """One entry in GET /api/v1/auth/providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


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
