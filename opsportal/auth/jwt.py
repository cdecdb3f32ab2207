# =============================================================================
# JWT Authentication Implementation
# =============================================================================
#
# This module provides:
#   - Access token creation
#   - Token validation (signature + expiry)
#   - Password hashing
#
# Tokens only carry the user id; role and flags are always re-read through
# the user cache so permission changes apply on the next request.
#
# =============================================================================

from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets

from pydantic import BaseModel
import jwt

from opsportal.config import Settings, get_settings
from opsportal.core.utils import generate_id, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================

class TokenPayload(BaseModel):
    """JWT token payload."""
    sub: str  # user_id
    exp: datetime
    iat: datetime
    type: str
    jti: str  # unique token ID


class AccessToken(BaseModel):
    """Token returned by the login endpoints."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds until the token expires


# =============================================================================
# Password Hashing
# =============================================================================

def hash_password(password: str) -> str:
    """
    Hash a password using PBKDF2-SHA256.

    Returns: salt:hash format string
    """
    salt = secrets.token_hex(32)
    hash_bytes = hashlib.pbkdf2_hmac(
        'sha256',
        password.encode('utf-8'),
        salt.encode('utf-8'),
        iterations=100_000
    )
    return f"{salt}:{hash_bytes.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    try:
        salt, stored_hash = password_hash.split(':')
        hash_bytes = hashlib.pbkdf2_hmac(
            'sha256',
            password.encode('utf-8'),
            salt.encode('utf-8'),
            iterations=100_000
        )
        return secrets.compare_digest(hash_bytes.hex(), stored_hash)
    except (ValueError, AttributeError):
        return False


# =============================================================================
# Token Creation
# =============================================================================

def create_access_token(
    user_id: str,
    extra_claims: dict | None = None,
    expires_delta: timedelta | None = None,
    settings: Settings | None = None,
) -> AccessToken:
    """Create a signed access token."""
    settings = settings or get_settings()
    now = utc_now()
    lifetime = expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)

    payload = {
        "sub": user_id,
        "exp": now + lifetime,
        "iat": now,
        "type": "access",
        "jti": generate_id("tok"),
        **(extra_claims or {}),
    }

    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return AccessToken(access_token=token, expires_in=int(lifetime.total_seconds()))


# =============================================================================
# Token Validation
# =============================================================================

class TokenError(Exception):
    """Base exception for token errors."""
    pass


class TokenExpiredError(TokenError):
    """Token has expired."""
    pass


class TokenInvalidError(TokenError):
    """Token is invalid or malformed."""
    pass


def decode_token(
    token: str,
    expected_type: str = "access",
    settings: Settings | None = None,
) -> TokenPayload:
    """
    Decode and validate a JWT token.

    Raises:
        TokenExpiredError: Token has expired
        TokenInvalidError: Token is invalid
    """
    settings = settings or get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp", "iat"]},
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenInvalidError(f"Invalid token: {e}")

    if payload.get("type") != expected_type:
        raise TokenInvalidError(f"Expected {expected_type} token, got {payload.get('type')}")

    return TokenPayload(
        sub=payload["sub"],
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
        type=payload["type"],
        jti=payload.get("jti", ""),
    )
