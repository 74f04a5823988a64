# app/core/dependencies.py
import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import TokenVerifier
from app.database import get_db
from app.domains.profile.service import ProfileService
from models import Profile

logger = logging.getLogger(__name__)

security = HTTPBearer()
verifier = TokenVerifier()


async def validate_token(token: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """Validate and decode the bearer token.

    Returns:
        dict: Decoded token payload

    Raises:
        HTTPException: If token is invalid or expired
    """
    if not token or not token.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication token is required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return verifier.verify_token(token.credentials)
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Token validation error: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def resolve_profile(payload: dict, db: AsyncSession) -> Profile:
    """Map token claims to the local profile, creating it on first sight.

    Raises:
        HTTPException: If the subject is missing or the profile is inactive
    """
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload - missing user ID",
        )

    profile = await ProfileService(db).get_or_create_profile(subject, payload)
    if not profile.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Profile is inactive")
    return profile


async def get_current_user(
    request: Request,
    payload: dict = Depends(validate_token),
    db: AsyncSession = Depends(get_db),
) -> Profile:
    """Get current authenticated user from JWT payload.

    Returns:
        Profile: Current authenticated user

    Raises:
        HTTPException: If user not found or inactive
    """
    try:
        profile = await resolve_profile(payload, db)
    except HTTPException:
        raise
    except Exception as e:
        logger.error("User authentication error: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication service error",
        ) from e

    # Add user info to request state for logging
    request.state.user_id = profile.id
    return profile
