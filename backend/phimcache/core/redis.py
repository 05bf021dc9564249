import redis.asyncio as redis
from phimcache.core.config import settings


def create_redis(url: str = None):
    # One client per event loop; redis.asyncio pools are bound to the loop that uses them
    return redis.from_url(url or settings.REDIS_URL, decode_responses=True)
