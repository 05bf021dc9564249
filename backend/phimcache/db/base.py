# Import Base class
from phimcache.db.base_class import Base

# Import all models here so that Base has them registered
# This is needed for Base.metadata.create_all()
from phimcache.models.movie import MovieCache
from phimcache.models.episode import EpisodeCache, EpisodeServer
from phimcache.models.cache_entry import CacheEntry
