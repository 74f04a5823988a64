"""Shared helpers for the test suite."""

import asyncio

import jwt

from app.core.config import settings


def make_token(subject: str, **claims) -> str:
    """Sign a token the way the identity provider would."""
    payload = {"sub": subject, **claims}
    return jwt.encode(payload, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)


def auth_headers(profile) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(profile.auth_subject)}"}


async def wait_for(condition, timeout: float = 2.0, interval: float = 0.01):
    """Poll ``condition`` until it is truthy or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = condition()
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)
