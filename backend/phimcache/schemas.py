from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
import enum

# Literal sentinel carried by the "movie not found" placeholder record.
MOVIE_NOT_FOUND_DESCRIPTION = "Movie information is currently unavailable."


class ServerType(str, enum.Enum):
    SEGMENTED_STREAM = "segmented-stream"
    DIRECT_FILE = "direct-file"
    EMBED = "embed"
    UNKNOWN = "unknown"


class Quality(str, enum.Enum):
    SD = "SD"
    HD = "HD"
    FHD = "FHD"


class ServerCandidate(BaseModel):
    id: Optional[str] = None
    name: str = ""
    url: str
    type: ServerType = ServerType.UNKNOWN
    quality: Quality = Quality.HD
    is_working: bool = True
    priority: int = 4


class EpisodeRecord(BaseModel):
    id: Optional[str] = None
    movie_slug: str
    episode_number: int = Field(ge=1)
    title: str = ""
    url: str = ""
    servers: List[ServerCandidate] = Field(default_factory=list)


class MovieRecord(BaseModel):
    slug: str
    title: str = ""
    original_title: Optional[str] = None
    description: Optional[str] = None
    poster_url: Optional[str] = None
    thumb_url: Optional[str] = None
    year: Optional[str] = None
    director: Optional[str] = None
    duration: Optional[str] = None
    language: Optional[str] = None
    quality: Optional[str] = None
    rating: Optional[float] = None
    trailer_url: Optional[str] = None
    genres: List[str] = Field(default_factory=list)
    countries: List[str] = Field(default_factory=list)
    views: int = 0
    last_updated: Optional[datetime] = None
    raw_payload: Optional[Dict[str, Any]] = None

    @property
    def is_placeholder(self) -> bool:
        return self.description == MOVIE_NOT_FOUND_DESCRIPTION


class Pagination(BaseModel):
    current_page: int = 1
    total_pages: int = 1
    total_items: int = 0
    limit: int = 10


class MovieListResponse(BaseModel):
    data: List[MovieRecord] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)


class ImageSet(BaseModel):
    poster_url: Optional[str] = None
    thumb_url: Optional[str] = None


class StreamingInfo(BaseModel):
    success: bool
    message: Optional[str] = None
    episode_id: Optional[str] = None
    episode_number: Optional[int] = None
    title: Optional[str] = None
    server: Optional[ServerCandidate] = None
    all_servers: List[ServerCandidate] = Field(default_factory=list)


class SyncResult(BaseModel):
    added: int = 0
    updated: int = 0
    failed: int = 0

    def __add__(self, other: "SyncResult") -> "SyncResult":
        return SyncResult(
            added=self.added + other.added,
            updated=self.updated + other.updated,
            failed=self.failed + other.failed,
        )


class SyncTriggerResponse(BaseModel):
    message: str
    task_id: str


class CacheStats(BaseModel):
    hits: Dict[str, int] = Field(default_factory=dict)
    misses: int = 0
    sets: int = 0
    degraded: Dict[str, int] = Field(default_factory=dict)
