import asyncio
import enum
from datetime import datetime
from typing import Awaitable, Callable, Optional
import logging

from phimcache.core.config import settings
from phimcache.core.exceptions import NormalizationError
from phimcache.core.timeutil import utcnow
from phimcache.schemas import MovieRecord, SyncResult
from phimcache.services.normalizer import ResponseNormalizer
from phimcache.services.store import MovieStore
from phimcache.services.upstream import UpstreamClient

logger = logging.getLogger(__name__)


class SyncPhase(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    DIFFING = "diffing"
    PERSISTING = "persisting"


async def _sleep_unless_stopped(seconds: float, stop_event: Optional[asyncio.Event]) -> bool:
    """Sleep for `seconds`; return True early if the stop event fires."""
    if stop_event is None:
        await asyncio.sleep(seconds)
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


class EpisodeSyncService:
    """Re-derives episode/server lists from the provider and reconciles them with the store."""

    def __init__(
        self,
        upstream: UpstreamClient,
        store: MovieStore,
        normalizer: ResponseNormalizer = None,
        inter_movie_delay: float = None,
    ):
        self.upstream = upstream
        self.store = store
        self.normalizer = normalizer or ResponseNormalizer()
        self.inter_movie_delay = inter_movie_delay if inter_movie_delay is not None else settings.SYNC_INTER_MOVIE_DELAY
        self.phase = SyncPhase.IDLE
        self.current_slug: Optional[str] = None

    def _enter(self, phase: SyncPhase) -> None:
        self.phase = phase
        logger.debug(f"Sync {self.current_slug}: {phase.value}")

    async def sync_episodes_for_movie(self, slug: str) -> SyncResult:
        result = SyncResult()
        self.current_slug = slug
        try:
            self._enter(SyncPhase.FETCHING)
            fetched = await self.upstream.get_episodes(slug)
            if not fetched.ok:
                logger.error(f"Episode sync for {slug} aborted: {fetched.failure}")
                result.failed += 1
                return result

            self._enter(SyncPhase.NORMALIZING)
            episodes = self.normalizer.normalize_episodes(fetched.payload, movie_slug=slug)
            # Episodes reference the movie row, so it is written first
            try:
                self.store.upsert_movie(self.normalizer.normalize_movie(fetched.payload, slug=slug))
            except NormalizationError as e:
                if not episodes:
                    raise
                # plain-text episode lists carry no movie fields
                logger.warning(f"No movie fields in episode payload for {slug}: {e}")
                if self.store.get_movie(slug) is None:
                    self.store.upsert_movie(MovieRecord(slug=slug, title=slug))

            for episode in episodes:
                try:
                    self._enter(SyncPhase.DIFFING)
                    existing = self.store.get_episode(slug, episode.episode_number)

                    self._enter(SyncPhase.PERSISTING)
                    if existing is None:
                        self.store.add_episode(episode)
                        result.added += 1
                    else:
                        self.store.replace_servers(slug, episode.episode_number, episode)
                        result.updated += 1
                except Exception as e:
                    logger.error(f"Failed to sync episode {episode.episode_number} of {slug}: {e}")
                    result.failed += 1

            logger.info(
                f"Synced {slug}: {result.added} added, {result.updated} updated, {result.failed} failed"
            )
        except Exception as e:
            logger.error(f"Episode sync for {slug} failed: {e}")
            # a failed flush leaves the shared session unusable until rolled back
            self.store.db.rollback()
            result.failed += 1
        finally:
            self._enter(SyncPhase.IDLE)
            self.current_slug = None
        return result

    async def sync_recent_movies(self, count: int = None, stop_event: asyncio.Event = None) -> SyncResult:
        """Sync the `count` most recently updated movies one after another."""
        count = count or settings.SYNC_RECENT_COUNT
        total = SyncResult()
        try:
            movies = self.store.list_recent_movies(count)
        except Exception as e:
            logger.error(f"Could not list recent movies for sync: {e}")
            total.failed += 1
            return total

        logger.info(f"Starting episode sync for {len(movies)} recent movies")
        for index, movie in enumerate(movies):
            if stop_event is not None and stop_event.is_set():
                logger.info("Stop requested, ending sync cycle early")
                break
            total += await self.sync_episodes_for_movie(movie.slug)
            if index < len(movies) - 1:
                if await _sleep_unless_stopped(self.inter_movie_delay, stop_event):
                    break

        logger.info(
            f"Recent movie sync done: {total.added} added, {total.updated} updated, {total.failed} failed"
        )
        return total


async def run_recent_sync(
    session_factory,
    upstream: UpstreamClient,
    count: int = None,
    stop_event: asyncio.Event = None,
) -> SyncResult:
    """One sync cycle on a fresh database session."""
    db = session_factory()
    try:
        service = EpisodeSyncService(upstream, MovieStore(db))
        return await service.sync_recent_movies(count, stop_event)
    finally:
        db.close()


class EpisodeSyncScheduler:
    """
    Runs a sync cycle after a startup delay and then again a full interval after
    each cycle completes. Two cycles never overlap. stop() is cooperative: the
    cycle sees the stop event between movies.
    """

    def __init__(
        self,
        cycle: Callable[[asyncio.Event], Awaitable[SyncResult]],
        interval: float = None,
        startup_delay: float = None,
    ):
        self.cycle = cycle
        self.interval = interval if interval is not None else settings.SYNC_INTERVAL
        self.startup_delay = startup_delay if startup_delay is not None else settings.SYNC_STARTUP_DELAY
        self.last_result: Optional[SyncResult] = None
        self.last_run: Optional[datetime] = None
        self.cycles = 0
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Episode sync scheduler started (delay {self.startup_delay}s, interval {self.interval}s)"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.info("Episode sync scheduler stopped")

    async def _loop(self) -> None:
        if await _sleep_unless_stopped(self.startup_delay, self._stop):
            return
        while not self._stop.is_set():
            try:
                self.last_result = await self.cycle(self._stop)
            except Exception as e:
                logger.exception(f"Episode sync cycle crashed: {e}")
            self.last_run = utcnow()
            self.cycles += 1
            if await _sleep_unless_stopped(self.interval, self._stop):
                break
