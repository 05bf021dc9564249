"""
Caller-facing read path.

Metadata reads go through the tiered cache; on a miss the provider is asked,
the answer normalized, artwork backfilled and the result written back through
every tier. Placeholders (missing artwork, "movie not found") are applied on
the way out only, so cached values never carry them.
"""
from typing import Awaitable, Callable, List, Optional
import logging

from phimcache.core.config import settings
from phimcache.core.exceptions import NormalizationError
from phimcache.schemas import (
    MOVIE_NOT_FOUND_DESCRIPTION,
    CacheStats,
    EpisodeRecord,
    MovieListResponse,
    MovieRecord,
    Pagination,
    StreamingInfo,
    SyncResult,
)
from phimcache.services.cache import TieredCache
from phimcache.services.episode_sync import EpisodeSyncService
from phimcache.services.image_enricher import ImageEnricher, apply_images, apply_placeholder_images, needs_images
from phimcache.services.normalizer import ResponseNormalizer
from phimcache.services.store import MovieStore
from phimcache.services.stream_analyzer import StreamServerAnalyzer
from phimcache.services.upstream import FetchResult, UpstreamClient

logger = logging.getLogger(__name__)


def movie_not_found(slug: str) -> MovieRecord:
    return MovieRecord(
        slug=slug,
        title="Movie not found",
        original_title="Movie not found",
        description=MOVIE_NOT_FOUND_DESCRIPTION,
    )


class MovieCatalogService:
    def __init__(
        self,
        upstream: UpstreamClient,
        cache: TieredCache,
        store: MovieStore,
        normalizer: ResponseNormalizer = None,
        enricher: ImageEnricher = None,
        analyzer: StreamServerAnalyzer = None,
        sync: EpisodeSyncService = None,
    ):
        self.upstream = upstream
        self.cache = cache
        self.store = store
        self.normalizer = normalizer or ResponseNormalizer()
        self.enricher = enricher or ImageEnricher(upstream, self.normalizer, cache=cache)
        self.analyzer = analyzer or StreamServerAnalyzer(store)
        self.sync = sync or EpisodeSyncService(upstream, store, self.normalizer)

    # Movie lists

    async def _movie_list(
        self,
        key: str,
        fetch: Callable[[], Awaitable[FetchResult]],
        page: int,
        limit: int,
    ) -> MovieListResponse:
        hit = await self.cache.get(key)
        if hit is not None:
            response = MovieListResponse.model_validate(hit.value)
        else:
            response = await self._fetch_movie_list(key, fetch, page, limit)

        apply_placeholder_images(response.data)
        return response

    async def _fetch_movie_list(self, key, fetch, page: int, limit: int) -> MovieListResponse:
        empty = MovieListResponse(pagination=Pagination(current_page=page, total_pages=0, total_items=0, limit=limit))

        result = await fetch()
        if not result.ok:
            return empty
        try:
            response = self.normalizer.normalize_movie_list(result.payload, page=page, limit=limit)
        except NormalizationError as e:
            logger.error(f"Could not normalize {key}: {e}")
            return empty

        await self.enricher.enrich(response.data)
        if response.data:
            await self.cache.set(key, response.model_dump(mode="json"))
        return response

    async def get_latest_movies(self, page: int = 1, limit: int = 10) -> MovieListResponse:
        return await self._movie_list(
            f"latest_movies:{page}:{limit}",
            lambda: self.upstream.get_latest_movies(page, limit),
            page,
            limit,
        )

    async def search_movies(self, keyword: str, page: int = 1, limit: int = 10) -> MovieListResponse:
        keyword = (keyword or "").strip()
        if not keyword:
            return MovieListResponse(pagination=Pagination(current_page=page, total_pages=0, total_items=0, limit=limit))
        return await self._movie_list(
            f"search:{keyword.lower()}:{page}:{limit}",
            lambda: self.upstream.search_movies(keyword, page, limit),
            page,
            limit,
        )

    async def filter_movies(
        self,
        type: Optional[str] = None,
        genre: Optional[str] = None,
        country: Optional[str] = None,
        year: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> MovieListResponse:
        key = f"filter:{type or ''}:{genre or ''}:{country or ''}:{year or ''}:{page}:{limit}"
        return await self._movie_list(
            key,
            lambda: self.upstream.filter_movies(type, genre, country, year, page, limit),
            page,
            limit,
        )

    # Movie detail

    async def get_movie_detail(self, slug: str) -> MovieRecord:
        """Never returns None; an exhausted fallback chain yields the not-found placeholder."""
        key = f"movie_detail:{slug}"
        hit = await self.cache.get(key)
        if hit is not None:
            movie = MovieRecord.model_validate(hit.value)
        else:
            movie = await self._fetch_movie_detail(key, slug)

        if movie is None:
            movie = movie_not_found(slug)
        apply_placeholder_images([movie])
        return movie

    async def _fetch_movie_detail(self, key: str, slug: str) -> Optional[MovieRecord]:
        movie = None
        result = await self.upstream.get_movie_detail(slug)
        if result.ok:
            try:
                movie = self.normalizer.normalize_movie(result.payload, slug=slug)
            except NormalizationError as e:
                logger.error(f"Could not normalize detail for {slug}: {e}")

        if movie is None:
            stored = self.store.get_movie(slug)
            if stored is not None:
                logger.info(f"Serving stored copy of {slug}")
            return stored

        if needs_images(movie):
            images = await self.enricher.resolve_images(movie.slug)
            if images is not None:
                apply_images(movie, images)

        try:
            movie = self.store.upsert_movie(movie)
        except Exception as e:
            logger.error(f"Could not persist movie {slug}: {e}")

        await self.cache.set(key, movie.model_dump(mode="json"))
        return movie

    def increment_views(self, slug: str) -> Optional[int]:
        return self.store.increment_views(slug)

    # Episodes and streams

    async def get_episodes(self, movie_slug: str) -> List[EpisodeRecord]:
        episodes = self.store.get_episodes(movie_slug)
        if episodes:
            return episodes

        logger.info(f"No stored episodes for {movie_slug}, syncing now")
        await self.sync.sync_episodes_for_movie(movie_slug)
        return self.store.get_episodes(movie_slug)

    async def get_best_stream(self, episode_id: str, preferred_quality: str = "HD") -> StreamingInfo:
        return await self.analyzer.best_streaming_info(episode_id, preferred_quality)

    async def sync_episodes(self, movie_slug: str) -> SyncResult:
        return await self.sync.sync_episodes_for_movie(movie_slug)

    async def sync_recent_movies(self, count: int = None) -> SyncResult:
        return await self.sync.sync_recent_movies(count or settings.SYNC_RECENT_COUNT)

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()
