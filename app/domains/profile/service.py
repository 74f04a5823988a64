# app/domains/profile/service.py
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions.base import TransientStoreError
from models import Profile

logger = logging.getLogger(__name__)


def _claim_interests(claims: dict[str, Any]) -> list[str]:
    interests = claims.get("interests") or []
    if isinstance(interests, str):
        interests = interests.split(",")
    return [str(tag).strip() for tag in interests if str(tag).strip()]


class ProfileService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_profile_by_subject(self, auth_subject: str) -> Profile | None:
        """Get a profile by identity provider subject."""
        result = await self.db.execute(select(Profile).where(Profile.auth_subject == auth_subject))
        return result.scalar_one_or_none()

    async def get_profile(self, profile_id: UUID) -> Profile | None:
        """Get a profile by ID."""
        try:
            result = await self.db.execute(select(Profile).where(Profile.id == profile_id))
        except SQLAlchemyError as e:
            logger.error(f"Failed to load profile {profile_id}: {str(e)}")
            raise TransientStoreError("Failed to load profile") from e
        return result.scalar_one_or_none()

    async def create_profile(self, auth_subject: str, claims: dict[str, Any]) -> Profile:
        """Create a profile from token claims."""
        profile = Profile(
            auth_subject=auth_subject,
            email=claims.get("email"),
            name=claims.get("name") or claims.get("username"),
            nickname=claims.get("nickname"),
            location=claims.get("location"),
            interests=_claim_interests(claims),
            avatar_url=claims.get("avatar_url") or claims.get("picture"),
            role=claims.get("role") or "learner",
        )

        try:
            self.db.add(profile)
            await self.db.commit()
            await self.db.refresh(profile)
            return profile
        except SQLAlchemyError:
            await self.db.rollback()
            raise

    async def get_or_create_profile(self, auth_subject: str, claims: dict[str, Any]) -> Profile:
        """Get existing profile or create a new one from token claims."""
        profile = await self.get_profile_by_subject(auth_subject)
        if profile:
            return profile

        try:
            return await self.create_profile(auth_subject, claims)
        except IntegrityError:
            # A parallel request created it first
            profile = await self.get_profile_by_subject(auth_subject)
            if profile is None:
                raise
            return profile
