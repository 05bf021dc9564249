import asyncio
from typing import Iterable, List, Optional
import logging

from phimcache.core.config import settings
from phimcache.core.exceptions import NormalizationError
from phimcache.schemas import ImageSet, MovieRecord
from phimcache.services.normalizer import ResponseNormalizer
from phimcache.services.upstream import UpstreamClient

logger = logging.getLogger(__name__)


def image_cache_key(slug: str) -> str:
    return f"movie_images:{slug}"


def needs_images(movie: MovieRecord) -> bool:
    return not movie.poster_url or not movie.thumb_url


def apply_images(movie: MovieRecord, images: ImageSet) -> bool:
    """Fill only the empty artwork fields. Returns True if anything changed."""
    changed = False
    if not movie.poster_url and images.poster_url:
        movie.poster_url = images.poster_url
        changed = True
    if not movie.thumb_url and images.thumb_url:
        movie.thumb_url = images.thumb_url
        changed = True
    return changed


def apply_placeholder_images(movies: Iterable[MovieRecord], placeholder: str = None) -> None:
    placeholder = placeholder or settings.PLACEHOLDER_IMAGE
    for movie in movies:
        if not movie.poster_url:
            movie.poster_url = placeholder
        if not movie.thumb_url:
            movie.thumb_url = movie.poster_url


class ImageEnricher:
    """
    Backfills missing poster/thumbnail URLs from the image-resolution endpoint.

    Movies are processed in batches; inside a batch the lookups run concurrently
    and the batch ends when every lookup is done or the deadline elapses,
    whichever comes first. Lookups still running at the deadline are cancelled
    and their movies keep whatever artwork they had.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        normalizer: ResponseNormalizer = None,
        cache=None,
        batch_size: int = None,
        batch_deadline: float = None,
    ):
        self.upstream = upstream
        self.normalizer = normalizer or ResponseNormalizer()
        self.cache = cache
        self.batch_size = batch_size or settings.ENRICH_BATCH_SIZE
        self.batch_deadline = batch_deadline if batch_deadline is not None else settings.ENRICH_BATCH_DEADLINE

    async def resolve_images(self, slug: str) -> Optional[ImageSet]:
        key = image_cache_key(slug)
        if self.cache is not None:
            hit = await self.cache.get(key)
            if hit is not None:
                return ImageSet.model_validate(hit.value)

        result = await self.upstream.get_images(slug)
        if not result.ok:
            return None
        try:
            images = self.normalizer.normalize_images(result.payload)
        except NormalizationError as e:
            logger.warning(f"Unreadable image payload for {slug}: {e}")
            return None

        if self.cache is not None and (images.poster_url or images.thumb_url):
            await self.cache.set(key, images.model_dump())
        return images

    async def _enrich_one(self, movie: MovieRecord) -> None:
        images = await self.resolve_images(movie.slug)
        if images is not None and apply_images(movie, images):
            logger.debug(f"Enriched artwork for {movie.slug}")

    async def enrich(self, movies: List[MovieRecord]) -> List[MovieRecord]:
        """Enrich movies in place and return the same list."""
        targets = [m for m in movies if m.slug and needs_images(m)]
        for start in range(0, len(targets), self.batch_size):
            batch = targets[start:start + self.batch_size]
            await self._run_batch(batch)
        return movies

    async def _run_batch(self, batch: List[MovieRecord]) -> None:
        tasks = [asyncio.create_task(self._enrich_one(movie)) for movie in batch]
        done, pending = await asyncio.wait(tasks, timeout=self.batch_deadline)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning(f"Image enrichment failed: {task.exception()!r}")

        if pending:
            logger.warning(
                f"Image enrichment deadline of {self.batch_deadline}s reached, "
                f"abandoning {len(pending)} of {len(batch)} lookups"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
