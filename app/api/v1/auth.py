"""Authentication endpoints and the bearer-token dependency."""

import logging
import uuid
from functools import lru_cache
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db, new_unit_of_work
from app.core.security import CredentialHasher
from app.core.tokens import TokenConfigurationError
from app.repositories.errors import StorageError
from app.repositories.unit_of_work import UnitOfWork
from app.schemas.auth import (
    AuthFailure,
    AuthResult,
    LoginRequest,
    LogoutResponse,
    PermissionsResponse,
    RefreshRequest,
    UserProfile,
    ValidateTokenRequest,
    ValidateTokenResponse,
)
from app.services.auth import AuthEngine, RequestContext, build_auth_engine
from app.services.users import UserProvisioning

logger = logging.getLogger(__name__)

router = APIRouter()
security = HTTPBearer(auto_error=False)


@lru_cache
def _cached_engine() -> AuthEngine:
    return build_auth_engine(get_settings(), new_unit_of_work)


def get_auth_engine() -> AuthEngine:
    """Dependency: the process-wide engine. 503 while no signing key is configured."""
    try:
        return _cached_engine()
    except TokenConfigurationError as e:
        logger.error("Token issuance disabled: %s", e.message)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Token issuance is not configured.",
        )


AuthEngineDep = Annotated[AuthEngine, Depends(get_auth_engine)]


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _auth_response(result: AuthResult) -> JSONResponse:
    """200 with tokens on success; 401 for auth failures (body keeps requires_mfa); 500 otherwise."""
    if result.success:
        code = status.HTTP_200_OK
    elif result.error is AuthFailure.INTERNAL_ERROR:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        code = status.HTTP_401_UNAUTHORIZED
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    engine: AuthEngineDep,
) -> uuid.UUID:
    """Dependency: require a valid Bearer access token and return its user id. Raises 401."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = credentials.credentials
    if not engine.validate_token(token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = engine.user_id_from_token(token)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]


@router.post("/login", response_model=AuthResult)
def login(body: LoginRequest, request: Request, engine: AuthEngineDep) -> JSONResponse:
    """
    Authenticate with username and password (plus mfa_code when MFA is enabled).
    Send the access token on later calls as: Authorization: Bearer <access_token>
    """
    result = engine.login(
        body.username,
        body.password,
        body.mfa_code,
        context=_request_context(request),
    )
    return _auth_response(result)


@router.post("/refresh", response_model=AuthResult)
def refresh(body: RefreshRequest, request: Request, engine: AuthEngineDep) -> JSONResponse:
    """Exchange a refresh token for a new token pair. The old refresh token stops working."""
    result = engine.refresh(body.refresh_token, context=_request_context(request))
    return _auth_response(result)


@router.post("/logout", response_model=LogoutResponse)
def logout(user_id: CurrentUserId, request: Request, engine: AuthEngineDep) -> LogoutResponse:
    if not engine.logout(user_id, context=_request_context(request)):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Logout failed.",
        )
    return LogoutResponse(success=True)


@router.post("/validate", response_model=ValidateTokenResponse)
def validate(body: ValidateTokenRequest, engine: AuthEngineDep) -> ValidateTokenResponse:
    return ValidateTokenResponse(valid=engine.validate_token(body.token))


@router.get("/me/permissions", response_model=PermissionsResponse)
def my_permissions(user_id: CurrentUserId, engine: AuthEngineDep) -> PermissionsResponse:
    """Effective permission codes of the caller, computed now (not read from the token)."""
    try:
        permissions = engine.effective_permissions(user_id)
    except StorageError as e:
        logger.error("Failed to resolve permissions for user %s: %s", user_id, e.message)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not load permissions.",
        )
    return PermissionsResponse(user_id=user_id, permissions=permissions)


def get_provisioning(db: Annotated[Session, Depends(get_db)]) -> UserProvisioning:
    """Dependency: provisioning service over the request's session."""
    hasher = CredentialHasher(iterations=get_settings().PASSWORD_HASH_ITERATIONS)
    return UserProvisioning(UnitOfWork(db), hasher)


@router.get("/me", response_model=UserProfile)
def me(
    user_id: CurrentUserId,
    provisioning: Annotated[UserProvisioning, Depends(get_provisioning)],
) -> UserProfile:
    """Profile of the caller. 404 if the account no longer exists."""
    user = provisioning.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    profile = UserProfile.model_validate(user)
    profile.roles = provisioning.role_names(user_id)
    return profile
