from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional

from phimcache.api.deps import get_catalog
from phimcache.schemas import CacheStats, EpisodeRecord, MovieListResponse, MovieRecord
from phimcache.services.catalog import MovieCatalogService

router = APIRouter()


@router.get("/latest", response_model=MovieListResponse)
async def latest_movies(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    catalog: MovieCatalogService = Depends(get_catalog),
):
    return await catalog.get_latest_movies(page, limit)


@router.get("/search", response_model=MovieListResponse)
async def search_movies(
    keyword: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    catalog: MovieCatalogService = Depends(get_catalog),
):
    return await catalog.search_movies(keyword, page, limit)


@router.get("/filter", response_model=MovieListResponse)
async def filter_movies(
    type: Optional[str] = None,
    genre: Optional[str] = None,
    country: Optional[str] = None,
    year: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    catalog: MovieCatalogService = Depends(get_catalog),
):
    return await catalog.filter_movies(type, genre, country, year, page, limit)


@router.get("/cache/stats", response_model=CacheStats)
def cache_stats(catalog: MovieCatalogService = Depends(get_catalog)):
    return catalog.cache_stats()


@router.get("/{slug}", response_model=MovieRecord)
async def movie_detail(slug: str, catalog: MovieCatalogService = Depends(get_catalog)):
    return await catalog.get_movie_detail(slug)


@router.post("/{slug}/views")
def increment_views(slug: str, catalog: MovieCatalogService = Depends(get_catalog)):
    views = catalog.increment_views(slug)
    if views is None:
        raise HTTPException(status_code=404, detail="Movie not found")
    return {"slug": slug, "views": views}


@router.get("/{slug}/episodes", response_model=List[EpisodeRecord])
async def movie_episodes(slug: str, catalog: MovieCatalogService = Depends(get_catalog)):
    return await catalog.get_episodes(slug)
