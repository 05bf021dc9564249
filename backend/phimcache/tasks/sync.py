import asyncio
from phimcache.core.celery_app import celery_app
from phimcache.db.session import SessionLocal
from phimcache.services.episode_sync import EpisodeSyncService
from phimcache.services.store import MovieStore
from phimcache.services.upstream import UpstreamClient
import logging

logger = logging.getLogger(__name__)


@celery_app.task
def sync_movie_episodes_task(slug: str):
    db = SessionLocal()
    try:
        service = EpisodeSyncService(UpstreamClient(), MovieStore(db))
        result = asyncio.run(service.sync_episodes_for_movie(slug))
        logger.info(f"Episode sync task for {slug} finished: {result}")
        return result.model_dump()
    finally:
        db.close()


@celery_app.task
def sync_recent_movies_task(count: int = None):
    db = SessionLocal()
    try:
        service = EpisodeSyncService(UpstreamClient(), MovieStore(db))
        result = asyncio.run(service.sync_recent_movies(count))
        logger.info(f"Recent movies sync task finished: {result}")
        return result.model_dump()
    finally:
        db.close()
