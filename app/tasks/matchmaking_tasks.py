"""Celery tasks for matchmaking and request housekeeping."""

import asyncio
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import all models to ensure they're registered before creating session
import models  # noqa: F401

from app.celery_app import celery_app
from app.core.config import settings
from app.domains.connect.matchmaker import Matchmaker
from app.domains.connect.registry import RequestRegistry
from app.services.change_feed import ChangeFeed
from app.services.realtime_bridge import build_publisher_feed

logger = logging.getLogger(__name__)

# Extra time a request may stay searching beyond the client's own timeout
STALE_REQUEST_GRACE_SECONDS = 20


def get_session_maker(database_url: str | None = None) -> async_sessionmaker:
    """Create an async session factory for Celery tasks.

    Each task run uses its own engine: ``asyncio.run`` starts a fresh event
    loop and pooled connections cannot cross loops.
    """
    engine = create_async_engine(
        database_url or settings.database_url,
        pool_pre_ping=True,
    )
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@celery_app.task(name="app.tasks.matchmaking_tasks.sweep_matches_task", bind=True)
def sweep_matches_task(self) -> dict[str, Any]:
    """Pair every compatible searching request.

    Returns:
        Dictionary with the number of connections created
    """
    logger.info(f"Starting matchmaking sweep (Task ID: {self.request.id})")

    try:
        result = asyncio.run(_sweep_matches_async())
        logger.info(f"Matchmaking sweep completed: {result}")
        return result

    except Exception as e:
        logger.error(f"Matchmaking sweep failed: {str(e)}")
        # Retry the task with exponential backoff
        raise self.retry(exc=e, countdown=2**self.request.retries, max_retries=3)


@celery_app.task(name="app.tasks.matchmaking_tasks.expire_stale_requests_task", bind=True)
def expire_stale_requests_task(self) -> dict[str, Any]:
    """Delete searching requests whose client never cancelled them.

    Returns:
        Dictionary with the number of requests expired
    """
    logger.info(f"Starting stale request cleanup (Task ID: {self.request.id})")

    try:
        result = asyncio.run(_expire_stale_requests_async())
        logger.info(f"Stale request cleanup completed: {result}")
        return result

    except Exception as e:
        logger.error(f"Stale request cleanup failed: {str(e)}")
        raise self.retry(exc=e, countdown=2**self.request.retries * 5, max_retries=3)


async def _sweep_matches_async(
    session_maker: async_sessionmaker | None = None,
    feed: ChangeFeed | None = None,
) -> dict[str, Any]:
    session_maker = session_maker or get_session_maker()
    bridge = None
    if feed is None:
        feed, bridge = build_publisher_feed()

    try:
        async with session_maker() as session:
            pairs = await Matchmaker(session, feed).sweep()
        return {"connections_created": pairs}
    finally:
        if bridge is not None:
            await bridge.stop()


async def _expire_stale_requests_async(
    session_maker: async_sessionmaker | None = None,
    feed: ChangeFeed | None = None,
    max_age_seconds: float | None = None,
) -> dict[str, Any]:
    session_maker = session_maker or get_session_maker()
    bridge = None
    if feed is None:
        feed, bridge = build_publisher_feed()

    if max_age_seconds is None:
        max_age_seconds = settings.connect_search_timeout_seconds + STALE_REQUEST_GRACE_SECONDS

    try:
        async with session_maker() as session:
            expired = await RequestRegistry(session, feed).expire_stale_requests(max_age_seconds)
        return {"requests_expired": expired}
    finally:
        if bridge is not None:
            await bridge.stop()
