"""
JWT token management.

Access tokens authenticate API requests; refresh tokens are exchanged for a
new token pair. Sign-in itself (Google) happens outside this service, which
only issues and verifies the tokens.
"""

import logging
import secrets
import os
from datetime import timedelta
from typing import Optional, Dict, Any

from jose import JWTError, jwt

from time_utils import utc_now

logger = logging.getLogger(__name__)


def is_production_like() -> bool:
    """
    Check if the current environment is production-like (production or staging).

    Returns:
        True if ENVIRONMENT is "production" or "staging", False otherwise
    """
    env = os.environ.get("ENVIRONMENT", "development").lower()
    return env in ("production", "staging")


# JWT configuration
# Load SECRET_KEY from environment variable (REQUIRED for security)
SECRET_KEY = os.environ.get("JWT_SECRET_KEY")
if not SECRET_KEY:
    if is_production_like():
        raise ValueError(
            "JWT_SECRET_KEY environment variable is required in production. "
            "Generate a secure key with: openssl rand -base64 32"
        )
    else:
        # Development fallback with warning
        SECRET_KEY = "dev-insecure-key-" + secrets.token_urlsafe(32)
        logger.warning(
            "⚠️  JWT_SECRET_KEY not set! Using temporary development key. "
            "This is INSECURE for production. Set JWT_SECRET_KEY environment variable."
        )

ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

# Parse token expiry times from environment with validation
try:
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", "15"))
    if ACCESS_TOKEN_EXPIRE_MINUTES < 1 or ACCESS_TOKEN_EXPIRE_MINUTES > 1440:  # 1 min to 24 hours
        logger.warning(
            f"⚠️  ACCESS_TOKEN_EXPIRE_MINUTES={ACCESS_TOKEN_EXPIRE_MINUTES} is outside safe range (1-1440). "
            "Using default of 15 minutes."
        )
        ACCESS_TOKEN_EXPIRE_MINUTES = 15
except ValueError:
    logger.warning("⚠️  Invalid ACCESS_TOKEN_EXPIRE_MINUTES value in environment. Using default of 15 minutes.")
    ACCESS_TOKEN_EXPIRE_MINUTES = 15

try:
    REFRESH_TOKEN_EXPIRE_DAYS = int(os.environ.get("REFRESH_TOKEN_EXPIRE_DAYS", "30"))
    if REFRESH_TOKEN_EXPIRE_DAYS < 1 or REFRESH_TOKEN_EXPIRE_DAYS > 90:  # 1 day to 90 days
        logger.warning(
            f"⚠️  REFRESH_TOKEN_EXPIRE_DAYS={REFRESH_TOKEN_EXPIRE_DAYS} is outside safe range (1-90). "
            "Using default of 30 days."
        )
        REFRESH_TOKEN_EXPIRE_DAYS = 30
except ValueError:
    logger.warning("⚠️  Invalid REFRESH_TOKEN_EXPIRE_DAYS value in environment. Using default of 30 days.")
    REFRESH_TOKEN_EXPIRE_DAYS = 30

# Validate JWT algorithm
SUPPORTED_ALGORITHMS = ["HS256", "HS384", "HS512"]
if ALGORITHM not in SUPPORTED_ALGORITHMS:
    logger.warning(
        f"⚠️  Unsupported JWT_ALGORITHM={ALGORITHM}. Using HS256. "
        f"Supported: {', '.join(SUPPORTED_ALGORITHMS)}"
    )
    ALGORITHM = "HS256"


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Payload data to encode in the token (typically sub and email)
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string

    Example:
        >>> token = create_access_token({"sub": user.id, "email": user.email})
    """
    to_encode = data.copy()
    expire = utc_now() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "type": "access"})

    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    logger.debug(f"Access token created for {data.get('sub')}, expires at: {expire}")
    return encoded_jwt


def create_refresh_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT refresh token with a unique JTI (JWT ID)."""
    to_encode = data.copy()
    expire = utc_now() + (expires_delta or timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    jti = secrets.token_urlsafe(32)
    to_encode.update({"exp": expire, "type": "refresh", "jti": jti})

    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    logger.debug(f"Refresh token created for {data.get('sub')}, expires at: {expire}")
    return encoded_jwt


def create_token_pair(user_id: str, email: str) -> Dict[str, Any]:
    """Issue an access + refresh token pair for a user."""
    claims = {"sub": user_id, "email": email}
    return {
        "access_token": create_access_token(claims),
        "refresh_token": create_refresh_token(claims),
        "token_type": "bearer",
        "expires_in": ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    }


def verify_token(token: str, expected_type: str = "access") -> Optional[Dict[str, Any]]:
    """
    Verify and decode a JWT token.

    Args:
        token: JWT token string to verify
        expected_type: Required "type" claim ("access" or "refresh")

    Returns:
        Decoded token payload if valid and of the expected type, None otherwise
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info(f"JWT verification failed: {str(e)}")
        return None

    if payload.get("type") != expected_type:
        logger.info(f"Invalid token type: {payload.get('type')}, expected {expected_type}")
        return None

    if not payload.get("sub"):
        logger.info("Token payload missing 'sub' claim")
        return None

    logger.debug(f"Token verified successfully for user: {payload.get('sub')}")
    return payload
