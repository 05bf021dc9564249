from fastapi import APIRouter, Depends
from typing import List

from phimcache.api.deps import get_catalog
from phimcache.schemas import ServerCandidate, StreamingInfo
from phimcache.services.catalog import MovieCatalogService

router = APIRouter()


@router.get("/episodes/{episode_id}/best", response_model=StreamingInfo)
async def best_stream(
    episode_id: str,
    quality: str = "HD",
    catalog: MovieCatalogService = Depends(get_catalog),
):
    return await catalog.get_best_stream(episode_id, quality)


@router.get("/episodes/{episode_id}/servers", response_model=List[ServerCandidate])
async def episode_servers(episode_id: str, catalog: MovieCatalogService = Depends(get_catalog)):
    return await catalog.analyzer.analyze(episode_id)
