"""
Unit tests for the security and dependencies modules.

This module contains unit tests for token verification and the functions
that map token claims to a local profile.
"""

from unittest.mock import MagicMock, patch

import jwt
import pytest
from fastapi import HTTPException, status

from app.core.dependencies import get_current_user, resolve_profile, validate_token
from app.core.security import TokenVerifier
from app.domains.profile.service import ProfileService
from models import Profile

SECRET = "unit-test-secret-key-that-is-long-enough"


class TestTokenVerifier:
    """Test cases for TokenVerifier."""

    def test_valid_token(self):
        token = jwt.encode({"sub": "user_1"}, SECRET, algorithm="HS256")
        assert TokenVerifier(secret_key=SECRET).verify_token(token)["sub"] == "user_1"

    def test_wrong_signature(self):
        token = jwt.encode({"sub": "user_1"}, "another-secret-key-of-sufficient-size", algorithm="HS256")
        with pytest.raises(HTTPException) as exc_info:
            TokenVerifier(secret_key=SECRET).verify_token(token)
        assert exc_info.value.status_code == status.HTTP_401_UNAUTHORIZED

    def test_audience_checked_when_configured(self):
        token = jwt.encode({"sub": "user_1", "aud": "other"}, SECRET, algorithm="HS256")
        with pytest.raises(HTTPException):
            TokenVerifier(secret_key=SECRET, audience="connect").verify_token(token)

    def test_unverified_outside_production(self):
        token = jwt.encode({"sub": "user_1"}, "whatever-key-used-by-the-provider", algorithm="HS256")
        verifier = TokenVerifier(secret_key="")
        assert verifier.verify_token(token)["sub"] == "user_1"

    def test_unverified_rejected_in_production(self):
        token = jwt.encode({"sub": "user_1"}, "whatever-key-used-by-the-provider", algorithm="HS256")
        verifier = TokenVerifier(secret_key="")
        with patch("app.core.security.settings") as mock_settings:
            mock_settings.is_production = True
            with pytest.raises(HTTPException):
                verifier.verify_token(token)

    def test_garbage_token(self):
        with pytest.raises(HTTPException):
            TokenVerifier(secret_key=SECRET).verify_token("not-a-jwt")


class TestValidateToken:
    """Test cases for validate_token dependency."""

    @pytest.mark.asyncio
    async def test_validate_token_success(self):
        """Test successful token validation."""
        mock_token = MagicMock()
        mock_token.credentials = "valid_jwt_token"

        with patch("app.core.dependencies.verifier.verify_token") as mock_verify:
            mock_verify.return_value = {"sub": "user_123"}

            result = await validate_token(mock_token)

        assert result == {"sub": "user_123"}
        mock_verify.assert_called_once_with("valid_jwt_token")

    @pytest.mark.asyncio
    async def test_validate_token_none_token(self):
        """Test token validation with None token."""
        with pytest.raises(HTTPException) as exc_info:
            await validate_token(None)

        assert exc_info.value.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_401(self):
        mock_token = MagicMock()
        mock_token.credentials = "token"

        with patch("app.core.dependencies.verifier.verify_token", side_effect=ValueError("bad")):
            with pytest.raises(HTTPException) as exc_info:
                await validate_token(mock_token)

        assert exc_info.value.status_code == status.HTTP_401_UNAUTHORIZED


class TestResolveProfile:
    """Test cases for mapping claims to profiles."""

    @pytest.mark.asyncio
    async def test_creates_profile_on_first_sight(self, test_db):
        profile = await resolve_profile(
            {"sub": "user_new", "name": "Neo", "interests": "Python, Go"}, test_db
        )

        assert profile.auth_subject == "user_new"
        assert profile.name == "Neo"
        assert profile.interests == ["Python", "Go"]

    @pytest.mark.asyncio
    async def test_returns_existing_profile(self, test_db, ada):
        profile = await resolve_profile({"sub": ada.auth_subject}, test_db)
        assert profile.id == ada.id

    @pytest.mark.asyncio
    async def test_missing_subject(self, test_db):
        with pytest.raises(HTTPException) as exc_info:
            await resolve_profile({}, test_db)
        assert exc_info.value.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_inactive_profile(self, test_db, profile_factory):
        inactive = await profile_factory(is_active=False)
        with pytest.raises(HTTPException) as exc_info:
            await resolve_profile({"sub": inactive.auth_subject}, test_db)
        assert exc_info.value.status_code == status.HTTP_403_FORBIDDEN

    @pytest.mark.asyncio
    async def test_get_current_user_sets_request_state(self, test_db, ada):
        request = MagicMock()
        profile = await get_current_user(request, {"sub": ada.auth_subject}, test_db)

        assert isinstance(profile, Profile)
        assert request.state.user_id == ada.id

    @pytest.mark.asyncio
    async def test_service_failure_becomes_500(self, test_db):
        with patch.object(
            ProfileService, "get_or_create_profile", side_effect=RuntimeError("boom")
        ):
            with pytest.raises(HTTPException) as exc_info:
                await get_current_user(MagicMock(), {"sub": "user_x"}, test_db)

        assert exc_info.value.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
