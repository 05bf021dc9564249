from fastapi import APIRouter
from phimcache.api.endpoints import movies, streaming, sync

api_router = APIRouter()
api_router.include_router(movies.router, prefix="/movies", tags=["movies"])
api_router.include_router(streaming.router, prefix="/streaming", tags=["streaming"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
