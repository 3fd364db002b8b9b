from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from jose import JWTError, jwt
from passlib.context import CryptContext

from mfgerp.core.settings import get_app_settings

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    """
    Raised when a token cannot identify a user of the requested tenant.

    `tenant_mismatch` distinguishes a valid token presented for another tenant
    (403) from a malformed, expired or wrong-type token (401).
    """

    def __init__(self, message: str, *, tenant_mismatch: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.tenant_mismatch = tenant_mismatch


# PUBLIC_INTERFACE
def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against a hashed password using bcrypt."""
    return _pwd_context.verify(plain_password, hashed_password)


# PUBLIC_INTERFACE
def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt."""
    return _pwd_context.hash(password)


def _create_token(data: Dict[str, Any], expires_delta: timedelta, token_type: str) -> str:
    settings = get_app_settings()
    now = datetime.now(tz=timezone.utc)
    claims = {**data, "exp": now + expires_delta, "iat": now, "type": token_type}
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


# PUBLIC_INTERFACE
def create_access_token(
    subject: str,
    tenant_id: str,
    roles: Optional[List[str]] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a signed access token carrying the user id, tenant and role names."""
    minutes = expires_minutes or get_app_settings().ACCESS_TOKEN_EXPIRE_MINUTES
    payload = {"sub": subject, "tenant_id": tenant_id, "roles": roles or []}
    return _create_token(payload, timedelta(minutes=minutes), ACCESS)


# PUBLIC_INTERFACE
def create_refresh_token(subject: str, tenant_id: str, expires_minutes: Optional[int] = None) -> str:
    """Create a signed refresh token with subject and tenant claim."""
    minutes = expires_minutes or get_app_settings().REFRESH_TOKEN_EXPIRE_MINUTES
    return _create_token({"sub": subject, "tenant_id": tenant_id}, timedelta(minutes=minutes), REFRESH)


# PUBLIC_INTERFACE
def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT; raises JWTError if invalid/expired."""
    settings = get_app_settings()
    return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])


# PUBLIC_INTERFACE
def token_subject(token: str, *, token_type: str, tenant_id: UUID | str) -> UUID:
    """
    Return the user id of a token issued for `tenant_id`.

    Raises:
        TokenError: bad signature, expiry, type, subject, or tenant claim.
    """
    try:
        claims = decode_token(token)
    except JWTError:
        raise TokenError("Invalid token")
    if claims.get("type") != token_type:
        raise TokenError("Invalid token type")
    if str(claims.get("tenant_id")) != str(tenant_id):
        raise TokenError("Tenant mismatch", tenant_mismatch=True)
    try:
        return UUID(str(claims.get("sub")))
    except ValueError:
        raise TokenError("Invalid token")
