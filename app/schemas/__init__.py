"""Pydantic request/response schemas."""

from app.schemas.auth import (
    AuthFailure,
    AuthResult,
    CreateUserRequest,
    LoginRequest,
    LogoutResponse,
    PermissionsResponse,
    RefreshRequest,
    ValidateTokenRequest,
    ValidateTokenResponse,
)
from app.schemas.health import HealthResponse

__all__ = [
    "AuthFailure",
    "AuthResult",
    "CreateUserRequest",
    "HealthResponse",
    "LoginRequest",
    "LogoutResponse",
    "PermissionsResponse",
    "RefreshRequest",
    "ValidateTokenRequest",
    "ValidateTokenResponse",
]
