"""Profile controller endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_current_user, validate_token
from app.database import get_db
from app.domains.profile.service import ProfileService
from app.exceptions.base import NotFoundError
from app.schemas.base import ResponseSchema
from app.schemas.profile import ProfileResponse, PublicProfileResponse
from models import Profile

router = APIRouter(
    prefix="/api/profiles",
    tags=["profiles"],
    dependencies=[Depends(validate_token)],
)


@router.get("/me", response_model=ResponseSchema)
async def get_my_profile(current_user: Profile = Depends(get_current_user)):
    """Get the current user's profile."""
    return ResponseSchema(
        status="success",
        message="Profile retrieved successfully",
        data=ProfileResponse.model_validate(current_user).model_dump(mode="json"),
    )


@router.get("/{profile_id}", response_model=ResponseSchema)
async def get_profile(
    profile_id: UUID = Path(..., description="Profile ID"),
    _current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get another user's public profile."""
    profile = await ProfileService(db).get_profile(profile_id)
    if not profile or not profile.is_active:
        raise NotFoundError("Profile not found")

    return ResponseSchema(
        status="success",
        message="Profile retrieved successfully",
        data=PublicProfileResponse.model_validate(profile).model_dump(mode="json"),
    )
