"""
FastAPI dependencies for authentication and delegated access.

- `get_current_user` resolves the caller from a JWT bearer token
- `get_acting_context` resolves whose data a request operates on
  (`?for_user_id=` for assistants acting on an owner's behalf)
"""

import logging
from typing import Optional, Tuple

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from database import get_db
from models import User
from auth.security import verify_token

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme for JWT authentication
security = HTTPBearer(auto_error=False)


def load_active_user(user_id: str, db: Session) -> User:
    """
    Look up the user a verified token refers to.

    Raises:
        HTTPException: 401 if the user no longer exists, 403 if deactivated
    """
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.info(f"User not found for id: {user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        logger.info(f"Inactive user attempted access: {user_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Extract and validate the current user from a JWT access token.

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired or of the
            wrong type; 403 if the account is inactive

    Example:
        @app.get("/api/protected")
        async def protected_route(user: User = Depends(get_current_user)):
            return {"user_id": user.id}
    """
    if not credentials or not credentials.credentials:
        logger.info("No authentication credentials provided")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(credentials.credentials, expected_type="access")
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = load_active_user(payload["sub"], db)
    logger.debug(f"User authenticated via JWT: {user.email}")
    return user


async def get_acting_context(
    for_user_id: Optional[str] = Query(None, description="Owner to act for (delegated access)"),
    current_user: User = Depends(get_current_user),
) -> Tuple[str, str]:
    """
    Resolve (acting_user_id, owner_id) for task and project endpoints.

    Without `for_user_id` the caller acts on their own data. Whether the caller
    may act for another owner is decided by the permission gate in the
    service layer, not here.
    """
    owner_id = for_user_id or current_user.id
    if owner_id != current_user.id:
        logger.debug(f"User {current_user.id} acting on behalf of {owner_id}")
    return current_user.id, owner_id
