"""
Authentication API endpoints.

This module provides REST API endpoints for:
- Token refresh (refresh token exchanged for a new token pair)
- Current user profile (read and update)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

import schemas
from database import get_db
from models import User
from auth.security import create_token_pair, verify_token
from auth.dependencies import get_current_user, load_active_user
from time_utils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# Request/Response schemas
class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    avatar_url: Optional[str] = Field(None, max_length=500)
    timezone: Optional[str] = Field(None, min_length=1, max_length=50)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(request: RefreshRequest, db: Session = Depends(get_db)):
    """
    Exchange a refresh token for a new access + refresh token pair.

    Raises:
        HTTPException: 401 if the refresh token is invalid or expired, or the
            user no longer exists; 403 if the account is inactive
    """
    logger.debug("Token refresh requested")

    payload = verify_token(request.refresh_token, expected_type="refresh")
    if payload is None:
        logger.info("Token refresh failed: invalid token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token",
        )

    user = load_active_user(payload["sub"], db)
    user.last_login_at = utc_now()
    db.commit()

    logger.info(f"Token refreshed successfully for user: {user.email} (ID: {user.id})")
    return create_token_pair(user.id, user.email)


@router.get("/me", response_model=schemas.User)
async def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get current authenticated user information."""
    logger.debug(f"Fetching user info for: {current_user.email}")
    return current_user


@router.patch("/me", response_model=schemas.User)
async def update_current_user(
    request: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update the current user's profile (name, avatar, timezone)."""
    updates = request.model_dump(exclude_unset=True)
    for field, value in updates.items():
        if value is not None:
            setattr(current_user, field, value)

    db.commit()
    db.refresh(current_user)

    logger.info(f"User {current_user.id} updated profile fields: {sorted(updates.keys())}")
    return current_user
