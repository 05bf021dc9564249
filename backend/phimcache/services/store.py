"""
Durable store for movies, episodes and their server candidates.

Key-based access only: movies by slug, episodes by (movie_slug, episode_number)
or by id. Server lists are always replaced as a whole.
"""
import json
import uuid
from datetime import timedelta
from typing import List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from phimcache.core.timeutil import utcnow

from phimcache.models.episode import EpisodeCache, EpisodeServer
from phimcache.models.movie import MovieCache
from phimcache.schemas import EpisodeRecord, MovieRecord, Quality, ServerCandidate, ServerType

logger = logging.getLogger(__name__)


def _join(tokens: List[str]) -> Optional[str]:
    return ", ".join(tokens) if tokens else None


def _split(value: Optional[str]) -> List[str]:
    return [t.strip() for t in value.split(",") if t.strip()] if value else []


def movie_to_record(row: MovieCache) -> MovieRecord:
    return MovieRecord(
        slug=row.slug,
        title=row.title or "",
        original_title=row.original_title,
        description=row.description,
        poster_url=row.poster_url,
        thumb_url=row.thumb_url,
        year=row.year,
        director=row.director,
        duration=row.duration,
        language=row.language,
        quality=row.quality,
        rating=row.rating,
        trailer_url=row.trailer_url,
        genres=_split(row.genres),
        countries=_split(row.countries),
        views=row.views or 0,
        last_updated=row.last_updated,
        raw_payload=json.loads(row.raw_payload) if row.raw_payload else None,
    )


def server_to_candidate(row: EpisodeServer) -> ServerCandidate:
    return ServerCandidate(
        id=row.id,
        name=row.name or "",
        url=row.url,
        type=ServerType(row.type) if row.type in ServerType._value2member_map_ else ServerType.UNKNOWN,
        quality=Quality(row.quality) if row.quality in Quality._value2member_map_ else Quality.HD,
        is_working=bool(row.is_working),
        priority=row.priority,
    )


def episode_to_record(row: EpisodeCache) -> EpisodeRecord:
    return EpisodeRecord(
        id=row.id,
        movie_slug=row.movie_slug,
        episode_number=row.episode_number,
        title=row.title or "",
        url=row.url or "",
        servers=[server_to_candidate(s) for s in row.servers],
    )


class MovieStore:
    def __init__(self, db: Session):
        self.db = db

    def _commit(self) -> None:
        # roll back so the shared session stays usable for the next movie
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    # Movies

    def get_movie(self, slug: str) -> Optional[MovieRecord]:
        row = self.db.query(MovieCache).filter(MovieCache.slug == slug).first()
        return movie_to_record(row) if row else None

    def upsert_movie(self, record: MovieRecord) -> MovieRecord:
        if not record.slug:
            raise ValueError("cannot persist a movie without slug")

        row = self.db.query(MovieCache).filter(MovieCache.slug == record.slug).first()
        now = utcnow()
        if row is None:
            row = MovieCache(slug=record.slug, views=0)
            self.db.add(row)
            logger.debug(f"Storing new movie {record.slug}")
        elif row.last_updated and now <= row.last_updated:
            # last_updated must strictly increase on every refresh
            now = row.last_updated + timedelta(microseconds=1)

        row.title = record.title
        row.original_title = record.original_title or record.title
        row.description = record.description
        row.poster_url = record.poster_url or row.poster_url
        row.thumb_url = record.thumb_url or row.thumb_url
        row.year = record.year
        row.director = record.director
        row.duration = record.duration
        row.language = record.language
        row.quality = record.quality
        row.rating = record.rating
        row.trailer_url = record.trailer_url or row.trailer_url
        row.genres = _join(record.genres)
        row.countries = _join(record.countries)
        row.views = max(row.views or 0, record.views or 0)
        row.last_updated = now
        if record.raw_payload is not None:
            row.raw_payload = json.dumps(record.raw_payload, default=str)

        self._commit()
        self.db.refresh(row)
        return movie_to_record(row)

    def increment_views(self, slug: str) -> Optional[int]:
        row = self.db.query(MovieCache).filter(MovieCache.slug == slug).first()
        if row is None:
            return None
        row.views = (row.views or 0) + 1
        self._commit()
        return row.views

    def list_recent_movies(self, count: int) -> List[MovieRecord]:
        rows = (
            self.db.query(MovieCache)
            .order_by(MovieCache.last_updated.desc())
            .limit(count)
            .all()
        )
        return [movie_to_record(r) for r in rows]

    # Episodes

    def get_episodes(self, movie_slug: str) -> List[EpisodeRecord]:
        rows = (
            self.db.query(EpisodeCache)
            .filter(EpisodeCache.movie_slug == movie_slug)
            .order_by(EpisodeCache.episode_number)
            .all()
        )
        return [episode_to_record(r) for r in rows]

    def get_episode(self, movie_slug: str, episode_number: int) -> Optional[EpisodeRecord]:
        row = self._episode_row(movie_slug, episode_number)
        return episode_to_record(row) if row else None

    def get_episode_by_id(self, episode_id: str) -> Optional[EpisodeRecord]:
        row = self.db.get(EpisodeCache, episode_id)
        return episode_to_record(row) if row else None

    def _episode_row(self, movie_slug: str, episode_number: int) -> Optional[EpisodeCache]:
        return (
            self.db.query(EpisodeCache)
            .filter(EpisodeCache.movie_slug == movie_slug, EpisodeCache.episode_number == episode_number)
            .first()
        )

    def add_episode(self, episode: EpisodeRecord) -> EpisodeRecord:
        now = utcnow()
        row = EpisodeCache(
            id=str(uuid.uuid4()),
            movie_slug=episode.movie_slug,
            episode_number=episode.episode_number,
            title=episode.title or f"Tập {episode.episode_number}",
            url=episode.url or (episode.servers[0].url if episode.servers else ""),
            created_at=now,
            updated_at=now,
        )
        row.servers = self._server_rows(episode.servers)
        self.db.add(row)
        self._commit()
        self.db.refresh(row)
        return episode_to_record(row)

    def replace_servers(self, movie_slug: str, episode_number: int, episode: EpisodeRecord) -> EpisodeRecord:
        row = self._episode_row(movie_slug, episode_number)
        if row is None:
            raise LookupError(f"episode {episode_number} of {movie_slug} does not exist")

        # delete-orphan cascade drops the previous server rows
        row.servers = self._server_rows(episode.servers)
        if episode.title:
            row.title = episode.title
        if episode.servers:
            row.url = episode.url or episode.servers[0].url
        row.updated_at = utcnow()
        self._commit()
        self.db.refresh(row)
        return episode_to_record(row)

    def _server_rows(self, servers: List[ServerCandidate]) -> List[EpisodeServer]:
        return [
            EpisodeServer(
                id=str(uuid.uuid4()),
                position=position,
                name=server.name,
                url=server.url,
                type=server.type.value,
                quality=server.quality.value,
                is_working=server.is_working,
                priority=server.priority,
            )
            for position, server in enumerate(servers)
        ]

    def update_server_status(self, servers: List[ServerCandidate]) -> None:
        """Write probe results and derived priorities back onto existing server rows."""
        for server in servers:
            if not server.id:
                continue
            row = self.db.get(EpisodeServer, server.id)
            if row is None:
                continue
            row.is_working = server.is_working
            row.priority = server.priority
            row.type = server.type.value
            row.quality = server.quality.value
        self._commit()
