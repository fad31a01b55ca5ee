"""Signed access tokens (JWT, HS256) and opaque refresh tokens."""

from __future__ import annotations

import base64
import logging
import secrets
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import jwt

from app.core.clock import Clock, SystemClock

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
REFRESH_TOKEN_BYTES = 32

# Claim names shared with the services that consume these tokens.
CLAIM_USER_ID = "user_id"
CLAIM_USERNAME = "username"
CLAIM_EMAIL = "email"
CLAIM_ROLE = "role"
CLAIM_PERMISSIONS = "permissions"

REQUIRED_CLAIMS = ["exp", "iat", "jti", "sub", "iss", "aud"]


class TokenConfigurationError(RuntimeError):
    """Raised when signing key, issuer or audience are missing; token issuance stays disabled."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class TokenSettings:
    """Immutable signing configuration, loaded once at startup."""

    secret_key: str | None
    issuer: str
    audience: str
    access_token_minutes: int = 15
    refresh_token_days: int = 7

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenSettings:
        secret = settings.JWT_SECRET.get_secret_value() if settings.JWT_SECRET else None
        return cls(
            secret_key=secret,
            issuer=settings.JWT_ISSUER,
            audience=settings.JWT_AUDIENCE,
            access_token_minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES,
            refresh_token_days=settings.REFRESH_TOKEN_EXPIRE_DAYS,
        )


@dataclass
class TokenClaims:
    """
    Decoded access token claims.

    Attributes:
        user_id: Subject identifier
        username: Username at issue time
        email: Email at issue time
        roles: Role names, one entry per role claim
        permissions: Permission codes, one entry per permission claim
        jti: Unique token id
        issued_at: iat claim
        expires_at: exp claim
    """

    user_id: uuid.UUID
    username: str
    email: str
    jti: str
    issued_at: datetime
    expires_at: datetime
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)


class TokenIssuer:
    """
    Mints and checks bearer tokens.

    Access tokens are self-contained JWTs; refresh tokens are random lookup keys stored
    server-side against the user and carry no claims. Expiry is measured against the
    injected clock with zero leeway.
    """

    def __init__(
        self,
        config: TokenSettings,
        clock: Clock | None = None,
        token_bytes: Callable[[int], bytes] = secrets.token_bytes,
    ) -> None:
        if not config.secret_key or not config.secret_key.strip():
            raise TokenConfigurationError(
                "JWT_SECRET is not set; token issuance is disabled."
            )
        if not config.issuer or not config.audience:
            raise TokenConfigurationError("JWT_ISSUER and JWT_AUDIENCE must be set.")
        self._secret = config.secret_key
        self.issuer = config.issuer
        self.audience = config.audience
        self.access_token_lifetime = timedelta(minutes=config.access_token_minutes)
        self.refresh_token_lifetime = timedelta(days=config.refresh_token_days)
        self._clock = clock or SystemClock()
        self._token_bytes = token_bytes

    def issue_access_token(
        self,
        user_id: uuid.UUID,
        username: str,
        email: str,
        roles: Sequence[str],
        permissions: Sequence[str],
    ) -> str:
        """Create a signed access token for the user with one entry per role and permission."""
        now = self._clock.now()
        payload: dict[str, Any] = {
            "sub": str(user_id),
            CLAIM_USER_ID: str(user_id),
            CLAIM_USERNAME: username,
            CLAIM_EMAIL: email,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": now + self.access_token_lifetime,
            "iss": self.issuer,
            "aud": self.audience,
            CLAIM_ROLE: list(roles),
            CLAIM_PERMISSIONS: list(permissions),
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def issue_refresh_token(self) -> str:
        """Return a 256-bit random refresh token, base64-encoded."""
        return base64.b64encode(self._token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")

    def access_token_expiry(self) -> datetime:
        """Expiry an access token minted now would carry."""
        return self._clock.now() + self.access_token_lifetime

    def refresh_token_expiry(self) -> datetime:
        """Expiry a refresh token minted now would carry."""
        return self._clock.now() + self.refresh_token_lifetime

    def _decode(self, token: str, verify_expiry: bool) -> dict[str, Any]:
        # PyJWT reads the wall clock; lifetime checks run here against the injected clock.
        payload = jwt.decode(
            token,
            self._secret,
            algorithms=[ALGORITHM],
            audience=self.audience,
            issuer=self.issuer,
            options={
                "verify_exp": False,
                "verify_iat": False,
                "verify_nbf": False,
                "require": REQUIRED_CLAIMS,
            },
        )
        if verify_expiry and payload["exp"] <= self._clock.now().timestamp():
            raise jwt.ExpiredSignatureError("Signature has expired")
        return payload

    def validate(self, token: str) -> bool:
        """True only if signature, issuer, audience and expiry all check out."""
        if not token:
            return False
        try:
            self._decode(token, verify_expiry=True)
            return True
        except jwt.PyJWTError as e:
            logger.warning("Token validation failed: %s", e)
            return False

    def extract_user_id(self, token: str) -> uuid.UUID | None:
        """
        Read the user id claim without verifying the signature.

        Not an authentication check; only for non-security-critical lookups.
        """
        if not token:
            return None
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
            raw = payload.get(CLAIM_USER_ID) or payload.get("sub")
            return uuid.UUID(str(raw)) if raw else None
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            logger.warning("Failed to extract user id from token: %s", e)
            return None

    def principal_from_token(self, token: str) -> TokenClaims | None:
        """Fully validate except expiry and return the claims, or None on any failure."""
        if not token:
            return None
        try:
            payload = self._decode(token, verify_expiry=False)
            return TokenClaims(
                user_id=uuid.UUID(payload.get(CLAIM_USER_ID) or payload["sub"]),
                username=payload.get(CLAIM_USERNAME, ""),
                email=payload.get(CLAIM_EMAIL, ""),
                jti=payload["jti"],
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
                roles=_as_list(payload.get(CLAIM_ROLE)),
                permissions=_as_list(payload.get(CLAIM_PERMISSIONS)),
            )
        except (jwt.PyJWTError, ValueError, TypeError, KeyError) as e:
            logger.warning("Failed to get principal from token: %s", e)
            return None


def _as_list(value: Any) -> list[str]:
    """Claims with a single entry may arrive as a bare string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]
