from contextlib import asynccontextmanager
from functools import partial
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from phimcache.api.api import api_router
from phimcache.core.config import settings
from phimcache.core.redis import create_redis
from phimcache.db.base import Base
from phimcache.db.session import SessionLocal, engine
from phimcache.services.cache import build_cache
from phimcache.services.episode_sync import EpisodeSyncScheduler, run_recent_sync
from phimcache.services.upstream import UpstreamClient
import logging

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    Base.metadata.create_all(bind=engine)

    redis_client = create_redis() if settings.REDIS_CACHE_ENABLED else None
    app.state.upstream = UpstreamClient()
    app.state.cache = build_cache(SessionLocal, redis_client)
    app.state.scheduler = None

    if settings.SYNC_ENABLED:
        app.state.scheduler = EpisodeSyncScheduler(
            partial(run_recent_sync, SessionLocal, app.state.upstream, settings.SYNC_RECENT_COUNT)
        )
        app.state.scheduler.start()

    yield

    # Shutdown
    if app.state.scheduler is not None:
        await app.state.scheduler.stop()
    await app.state.cache.flush()
    if redis_client is not None:
        await redis_client.aclose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
