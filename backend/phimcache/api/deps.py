from fastapi import Depends, Request
from sqlalchemy.orm import Session

from phimcache.db.session import get_db
from phimcache.services.catalog import MovieCatalogService
from phimcache.services.store import MovieStore


def get_catalog(request: Request, db: Session = Depends(get_db)) -> MovieCatalogService:
    # upstream client and cache live for the whole process; the store is per request
    state = request.app.state
    return MovieCatalogService(state.upstream, state.cache, MovieStore(db))
