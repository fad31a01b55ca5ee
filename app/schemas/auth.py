"""Request/response schemas for authentication and provisioning."""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from app.core.security import (
    PASSWORD_MAX_LEN,
    PASSWORD_MIN_LEN,
    USERNAME_MAX_LEN,
    USERNAME_MIN_LEN,
)

USERNAME_PATTERN = r"^[a-zA-Z0-9._-]+$"
MFA_CODE_PATTERN = r"^\d{6}$"


class AuthFailure(str, Enum):
    """Why an authentication call did not produce tokens."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_DISABLED = "account_disabled"
    ACCOUNT_LOCKED = "account_locked"
    MFA_REQUIRED = "mfa_required"
    INVALID_MFA_CODE = "invalid_mfa_code"
    TOKEN_EXPIRED = "token_expired"
    INTERNAL_ERROR = "internal_error"


# Caller-facing messages. User-not-found and wrong password share one message.
FAILURE_MESSAGES: dict[AuthFailure, str] = {
    AuthFailure.INVALID_CREDENTIALS: "Invalid username or password.",
    AuthFailure.ACCOUNT_DISABLED: "Account is disabled.",
    AuthFailure.ACCOUNT_LOCKED: "Account is locked.",
    AuthFailure.MFA_REQUIRED: "Multi-factor authentication code required.",
    AuthFailure.INVALID_MFA_CODE: "Invalid multi-factor authentication code.",
    AuthFailure.TOKEN_EXPIRED: "Session has expired.",
    AuthFailure.INTERNAL_ERROR: "Internal error.",
}


class AuthResult(BaseModel):
    """Outcome of login or refresh. Tokens are present only when success is True."""

    success: bool
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = Field(
        default=None, description="Access token expiry (UTC)"
    )
    error: AuthFailure | None = None
    error_message: str | None = None
    requires_mfa: bool = False

    @classmethod
    def failed(cls, error: AuthFailure) -> "AuthResult":
        return cls(
            success=False,
            error=error,
            error_message=FAILURE_MESSAGES[error],
            requires_mfa=error is AuthFailure.MFA_REQUIRED,
        )

    @classmethod
    def succeeded(
        cls, access_token: str, refresh_token: str, expires_at: datetime
    ) -> "AuthResult":
        return cls(
            success=True,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )


class LoginRequest(BaseModel):
    """Credentials for login."""

    username: str = Field(
        ...,
        min_length=USERNAME_MIN_LEN,
        max_length=USERNAME_MAX_LEN,
        pattern=USERNAME_PATTERN,
        description="Username (letters, digits, '.', '-', '_')",
    )
    password: str = Field(
        ..., min_length=PASSWORD_MIN_LEN, max_length=PASSWORD_MAX_LEN, description="Password"
    )
    mfa_code: str | None = Field(
        default=None, pattern=MFA_CODE_PATTERN, description="6-digit TOTP code"
    )


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=500)


class ValidateTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ValidateTokenResponse(BaseModel):
    valid: bool


class LogoutResponse(BaseModel):
    success: bool


class PermissionsResponse(BaseModel):
    """Effective permission codes of the authenticated user."""

    user_id: uuid.UUID
    permissions: list[str]


class UserProfile(BaseModel):
    """Account details of the authenticated user (no credential or token fields)."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    username: str
    email: str
    full_name: str
    phone: str | None = None
    department: str | None = None
    unit: str | None = None
    position: str | None = None
    is_active: bool
    mfa_enabled: bool
    last_login_at: datetime | None = None
    roles: list[str] = Field(default_factory=list)


class CreateUserRequest(BaseModel):
    """Provisioning input for a new account."""

    username: str = Field(
        ..., min_length=USERNAME_MIN_LEN, max_length=USERNAME_MAX_LEN, pattern=USERNAME_PATTERN
    )
    email: str = Field(..., min_length=3, max_length=200)
    full_name: str = Field(..., min_length=2, max_length=100)
    password: str = Field(..., min_length=8, max_length=PASSWORD_MAX_LEN)
    phone: str | None = Field(default=None, pattern=r"^[0-9]{10,11}$")
    department: str | None = Field(default=None, max_length=100)
    unit: str | None = Field(default=None, max_length=100)
    position: str | None = Field(default=None, max_length=100)
