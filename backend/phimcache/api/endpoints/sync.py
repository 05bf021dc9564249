from fastapi import APIRouter, Depends, Request

from phimcache.api.deps import get_catalog
from phimcache.schemas import SyncResult, SyncTriggerResponse
from phimcache.services.catalog import MovieCatalogService
from phimcache.tasks.sync import sync_movie_episodes_task, sync_recent_movies_task

router = APIRouter()


@router.get("/status")
def get_sync_status(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return {"enabled": False}
    return {
        "enabled": True,
        "running": scheduler.running,
        "cycles": scheduler.cycles,
        "last_run": scheduler.last_run,
        "last_result": scheduler.last_result,
    }


@router.post("/movies/{slug}", response_model=SyncResult)
async def sync_movie_now(slug: str, catalog: MovieCatalogService = Depends(get_catalog)):
    return await catalog.sync_episodes(slug)


@router.post("/movies/{slug}/background", response_model=SyncTriggerResponse)
def trigger_movie_sync(slug: str):
    task = sync_movie_episodes_task.delay(slug)
    return SyncTriggerResponse(message=f"Episode sync for {slug} started", task_id=task.id)


@router.post("/recent", response_model=SyncTriggerResponse)
def trigger_recent_sync(count: int = None):
    task = sync_recent_movies_task.delay(count)
    return SyncTriggerResponse(message="Recent movies sync started", task_id=task.id)
