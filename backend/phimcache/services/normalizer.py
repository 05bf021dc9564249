"""
Reconciles the provider's response dialects into MovieRecord / EpisodeRecord.

Known dialects:

    FLAT      detail fields at the top level, episodes as
              [{"server_name": ..., "items": [{"name", "slug", "embed", "m3u8"}]}]
    MOVIE     {"movie": {...}, "episodes": [{"server_name": ..., "server_data":
              [{"name", "slug", "link_embed", "link_m3u8"}]}]}
    ENVELOPE  {"success"/"status": ..., "data": {...}} or {"data": {"item": {...}}}
    TEXT      plain "Tập N|url" lines instead of JSON

Field names are resolved through FIELD_ALIASES: the first alias that holds a
non-empty value wins. A single malformed field falls back to its empty
default; only an unparseable payload raises NormalizationError.
"""
import enum
import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import logging

from phimcache.core.exceptions import NormalizationError
from phimcache.core.timeutil import utcnow
from phimcache.schemas import EpisodeRecord, ImageSet, MovieListResponse, MovieRecord, Pagination
from phimcache.services.stream_analyzer import candidates_from_links, candidates_from_url, rank_servers
from phimcache.services.upstream import Operation

logger = logging.getLogger(__name__)

RawPayload = Union[str, bytes, dict, list]


class Dialect(str, enum.Enum):
    FLAT = "flat"
    MOVIE = "movie"
    ENVELOPE = "envelope"
    TEXT = "text"


FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "slug": ("slug", "movie_slug"),
    "title": ("name", "title", "ten_phim"),
    "original_title": ("original_name", "origin_name", "originalName", "original_title"),
    "description": ("description", "content", "mo_ta", "overview"),
    "poster_url": ("poster_url", "poster", "sub_poster", "posterUrl"),
    "thumb_url": ("thumb_url", "thumb", "sub_thumb", "thumbUrl"),
    "year": ("year", "nam_phat_hanh", "release_year"),
    "director": ("director", "directors"),
    "duration": ("time", "duration", "runtime"),
    "language": ("language", "lang"),
    "quality": ("quality",),
    "rating": ("rating", "tmdb_vote_average", "tmdb.vote_average", "imdb.vote_average"),
    "trailer_url": ("trailer_url", "trailer"),
    "genres": ("genres", "categories", "category", "the_loai"),
    "countries": ("countries", "country", "quoc_gia"),
    "views": ("view", "views", "view_count"),
}

EPISODE_ITEM_KEYS = ("server_data", "items", "episodes")
PAGINATION_ALIASES: Dict[str, Tuple[str, ...]] = {
    "current_page": ("current_page", "currentPage", "page"),
    "total_pages": ("total_pages", "totalPages", "last_page"),
    "total_items": ("total_items", "totalItems", "total"),
    "limit": ("limit", "totalItemsPerPage", "per_page"),
}

EPISODE_LINE = re.compile(r"Tập\s+(\d+)\s*\|\s*(\S.*)", re.IGNORECASE)


@dataclass
class DecodedPayload:
    dialect: Dialect
    document: Any = None
    movie: Dict[str, Any] = field(default_factory=dict)
    episode_groups: List[Any] = field(default_factory=list)
    episode_text: Optional[str] = None


def _lookup(doc: Dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, dict)) and len(value) == 0)


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, dict):
        return _text(value.get("name"))
    if isinstance(value, list):
        parts = [t for t in (_text(v) for v in value) if t]
        return ", ".join(parts) or None
    raise TypeError(f"unsupported value type {type(value).__name__}")


def _tokens(value: Any) -> List[str]:
    """Comma separated string, list of strings or list of {"name": ...} into distinct tokens."""
    if isinstance(value, str):
        raw = value.split(",")
    elif isinstance(value, list):
        raw = [_text(v) or "" for v in value]
    elif isinstance(value, dict):
        raw = [_text(value) or ""]
    else:
        raise TypeError(f"unsupported value type {type(value).__name__}")

    seen = set()
    tokens = []
    for token in (t.strip() for t in raw):
        if token and token.casefold() not in seen:
            seen.add(token.casefold())
            tokens.append(token)
    return tokens


def _float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        raise TypeError("boolean is not a rating")
    number = float(value)
    if math.isnan(number):
        return None
    return number


def _int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("boolean is not a count")
    return int(float(value))


def resolve_field(doc: Dict[str, Any], name: str, coerce: Callable[[Any], Any] = _text, default: Any = None) -> Any:
    for alias in FIELD_ALIASES[name]:
        value = _lookup(doc, alias)
        if _is_empty(value):
            continue
        try:
            coerced = coerce(value)
        except (TypeError, ValueError) as e:
            logger.debug(f"Malformed field {alias!r} for {name}: {e}")
            continue
        if not _is_empty(coerced):
            return coerced
    return default


class ResponseNormalizer:
    def decode(self, raw: RawPayload, allow_text: bool = False) -> DecodedPayload:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")

        if isinstance(raw, str):
            body = raw.strip()
            try:
                document = json.loads(body)
            except ValueError:
                if allow_text and EPISODE_LINE.search(body):
                    return DecodedPayload(dialect=Dialect.TEXT, document=body, episode_text=body)
                raise NormalizationError("payload is neither JSON nor episode text")
        else:
            document = raw

        if isinstance(document, list):
            return DecodedPayload(dialect=Dialect.FLAT, document=document, episode_groups=document)
        if not isinstance(document, dict):
            raise NormalizationError(f"unexpected top-level JSON type {type(document).__name__}")

        if isinstance(document.get("movie"), dict):
            movie = document["movie"]
            dialect = Dialect.MOVIE
            episodes = document.get("episodes") or movie.get("episodes")
        elif isinstance(document.get("data"), dict):
            inner = document["data"]
            movie = inner["item"] if isinstance(inner.get("item"), dict) else inner
            dialect = Dialect.ENVELOPE
            episodes = movie.get("episodes") or inner.get("episodes")
        else:
            movie = document
            dialect = Dialect.FLAT
            episodes = document.get("episodes")

        decoded = DecodedPayload(dialect=dialect, document=document, movie=movie)
        if isinstance(episodes, str):
            decoded.episode_text = episodes
        elif isinstance(episodes, list):
            decoded.episode_groups = episodes
        return decoded

    def normalize(self, raw: RawPayload, kind: Operation, slug: Optional[str] = None, page: int = 1, limit: int = 10):
        if kind == Operation.DETAIL:
            return self.normalize_movie(raw, slug=slug)
        if kind in (Operation.LATEST, Operation.SEARCH, Operation.FILTER):
            return self.normalize_movie_list(raw, page=page, limit=limit)
        if kind == Operation.EPISODES:
            return self.normalize_episodes(raw, movie_slug=slug)
        if kind == Operation.IMAGES:
            return self.normalize_images(raw)
        raise NormalizationError(f"no normalizer for {kind}", operation=str(kind))

    def normalize_movie(self, raw: RawPayload, slug: Optional[str] = None) -> MovieRecord:
        decoded = self.decode(raw)
        if _is_failure_document(decoded.document):
            raise NormalizationError("provider reported failure for movie detail", operation=Operation.DETAIL.value)
        record = self._movie_from_doc(decoded.movie, fallback_slug=slug)
        if record is None:
            raise NormalizationError("movie payload carries no slug", operation=Operation.DETAIL.value)
        record.raw_payload = {
            "dialect": decoded.dialect.value,
            "movie": {k: v for k, v in decoded.movie.items() if k != "episodes"},
        }
        return record

    def _movie_from_doc(self, doc: Dict[str, Any], fallback_slug: Optional[str] = None) -> Optional[MovieRecord]:
        if not isinstance(doc, dict):
            return None
        slug = resolve_field(doc, "slug") or fallback_slug
        if not slug:
            return None

        return MovieRecord(
            slug=slug,
            title=resolve_field(doc, "title", default=""),
            original_title=resolve_field(doc, "original_title"),
            description=resolve_field(doc, "description"),
            poster_url=resolve_field(doc, "poster_url"),
            thumb_url=resolve_field(doc, "thumb_url"),
            year=resolve_field(doc, "year"),
            director=resolve_field(doc, "director"),
            duration=resolve_field(doc, "duration"),
            language=resolve_field(doc, "language"),
            quality=resolve_field(doc, "quality"),
            rating=resolve_field(doc, "rating", _float),
            trailer_url=resolve_field(doc, "trailer_url"),
            genres=resolve_field(doc, "genres", _tokens, default=[]),
            countries=resolve_field(doc, "countries", _tokens, default=[]),
            views=max(resolve_field(doc, "views", _int, default=0), 0),
            last_updated=utcnow(),
        )

    def normalize_movie_list(self, raw: RawPayload, page: int = 1, limit: int = 10) -> MovieListResponse:
        decoded = self.decode(raw)
        document = decoded.document
        items = self._list_items(document)
        if items is None:
            raise NormalizationError("no movie list found in payload")

        movies = []
        for item in items:
            movie = self._movie_from_doc(item)
            if movie is None:
                logger.debug("Skipping list item without slug")
                continue
            movies.append(movie)

        return MovieListResponse(data=movies, pagination=self._pagination(document, len(movies), page, limit))

    def _list_items(self, document: Any) -> Optional[List[Any]]:
        if isinstance(document, list):
            return document
        if not isinstance(document, dict):
            return None
        for path in ("data", "items", "data.items", "movies", "data.data"):
            value = _lookup(document, path)
            if isinstance(value, list):
                return value
        return None

    def _pagination(self, document: Any, count: int, page: int, limit: int) -> Pagination:
        source: Dict[str, Any] = {}
        if isinstance(document, dict):
            for path in ("pagination", "data.params.pagination", "data.pagination", "paginate"):
                value = _lookup(document, path)
                if isinstance(value, dict):
                    source = value
                    break

        def pick(name: str) -> Optional[int]:
            for alias in PAGINATION_ALIASES[name]:
                try:
                    if source.get(alias) is not None:
                        return _int(source[alias])
                except (TypeError, ValueError):
                    continue
            return None

        limit = pick("limit") or limit
        total_items = pick("total_items")
        if total_items is None:
            total_items = count
        total_pages = pick("total_pages")
        if total_pages is None:
            total_pages = max(math.ceil(total_items / limit), 1) if limit else 1

        return Pagination(
            current_page=pick("current_page") or page,
            total_pages=total_pages,
            total_items=total_items,
            limit=limit,
        )

    def normalize_episodes(self, raw: RawPayload, movie_slug: Optional[str] = None) -> List[EpisodeRecord]:
        decoded = self.decode(raw, allow_text=True)
        slug = movie_slug or (resolve_field(decoded.movie, "slug") if decoded.movie else None)
        if not slug:
            raise NormalizationError("episode payload has no movie slug", operation=Operation.EPISODES.value)

        if decoded.episode_text is not None:
            return parse_episode_lines(decoded.episode_text, slug)

        by_number: Dict[int, EpisodeRecord] = {}
        for group_index, group in enumerate(decoded.episode_groups):
            if not isinstance(group, dict):
                continue
            server_name = _safe_text(group.get("server_name")) or _safe_text(group.get("name")) or f"Server {group_index + 1}"
            items = next((group[k] for k in EPISODE_ITEM_KEYS if isinstance(group.get(k), list)), [])

            for position, item in enumerate(items, start=1):
                if not isinstance(item, dict):
                    continue
                servers = candidates_from_links(
                    server_name,
                    m3u8=_safe_text(item.get("link_m3u8")) or _safe_text(item.get("m3u8")),
                    embed=_safe_text(item.get("link_embed")) or _safe_text(item.get("embed")),
                    url=_safe_text(item.get("url")) or _safe_text(item.get("link")),
                )
                if not servers:
                    logger.warning(f"No valid URLs for episode {position} of {slug} on {server_name}")
                    continue

                episode = by_number.get(position)
                if episode is None:
                    episode = EpisodeRecord(
                        movie_slug=slug,
                        episode_number=position,
                        title=_episode_title(item.get("name"), position),
                    )
                    by_number[position] = episode
                episode.servers.extend(servers)

        episodes = []
        for number in sorted(by_number):
            episode = by_number[number]
            episode.servers = rank_servers(episode.servers)
            episode.url = episode.servers[0].url
            episodes.append(episode)
        return episodes

    def normalize_images(self, raw: RawPayload) -> ImageSet:
        decoded = self.decode(raw)
        document = decoded.document if isinstance(decoded.document, dict) else {}
        if _is_failure_document(document):
            return ImageSet()
        source = decoded.movie or document
        return ImageSet(
            poster_url=_first_text(source, ("sub_poster", "poster_url", "poster")),
            thumb_url=_first_text(source, ("sub_thumb", "thumb_url", "thumb")),
        )


def _is_failure_document(document: Any) -> bool:
    if not isinstance(document, dict):
        return False
    return document.get("success") is False or document.get("status") in (False, "error", "fail")


def _safe_text(value: Any) -> Optional[str]:
    try:
        return _text(value)
    except TypeError:
        return None


def _first_text(doc: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = _safe_text(doc.get(key))
        if value:
            return value
    return None


def _episode_title(name: Any, number: int) -> str:
    text = _safe_text(name)
    if not text or text.isdigit():
        return f"Tập {number}"
    return text


def parse_episode_lines(text: str, movie_slug: str) -> List[EpisodeRecord]:
    """One EpisodeRecord per "Tập N|url" line, numbered 1..count in line order."""
    episodes = []
    for line in text.splitlines():
        match = EPISODE_LINE.search(line.strip())
        if not match:
            continue
        number = len(episodes) + 1
        servers = rank_servers(candidates_from_url(match.group(2).strip()))
        episodes.append(EpisodeRecord(
            movie_slug=movie_slug,
            episode_number=number,
            title=f"Tập {match.group(1)}",
            url=servers[0].url,
            servers=servers,
        ))
    return episodes
