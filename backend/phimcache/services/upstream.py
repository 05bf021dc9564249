import asyncio
import enum
import httpx
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Any
import logging

from phimcache.core.config import settings

logger = logging.getLogger(__name__)


class Operation(str, enum.Enum):
    LATEST = "latest"
    DETAIL = "detail"
    SEARCH = "search"
    FILTER = "filter"
    EPISODES = "episodes"
    IMAGES = "images"


# Path template per logical operation; {version} is the dialect suffix.
OPERATION_PATHS: Dict[Operation, str] = {
    Operation.LATEST: "/phim-moi/{version}",
    Operation.DETAIL: "/phim-chi-tiet/{version}",
    Operation.SEARCH: "/phim-data/{version}",
    Operation.FILTER: "/phim-data/{version}",
    Operation.EPISODES: "/phim-chi-tiet/{version}",
    Operation.IMAGES: "/get-img/{version}",
}

DEFAULT_VERSIONS: Dict[Operation, tuple] = {
    Operation.LATEST: ("v1", "v3", "v2"),
    Operation.DETAIL: ("v3", "v2", "v1"),
    Operation.SEARCH: ("v1", "v3", "v2"),
    Operation.FILTER: ("v1", "v3", "v2"),
    Operation.EPISODES: ("v3", "v2", "v1"),
    Operation.IMAGES: ("v1", "v3", "v2"),
}


@dataclass
class VersionAttempt:
    version: str
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class UpstreamFailure:
    operation: Operation
    attempts: List[VersionAttempt] = field(default_factory=list)

    def __str__(self) -> str:
        tried = ", ".join(
            f"{a.version}={a.status_code if a.status_code is not None else a.error}"
            for a in self.attempts
        )
        return f"all versions failed for {self.operation.value} ({tried or 'no versions'})"


@dataclass
class FetchResult:
    """Outcome of one logical upstream call: a raw body from the first good version, or a failure."""
    operation: Operation
    payload: Optional[str] = None
    version: Optional[str] = None
    failure: Optional[UpstreamFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.payload is not None


class UpstreamClient:
    """
    Versioned client for the content provider.

    Every logical operation is served by several dialect versions of the same
    endpoint. fetch() walks the version list in order and returns the first
    2xx response with a non-empty body. There is no retry within a version.
    """

    def __init__(
        self,
        base_url: str = None,
        timeout: float = None,
        max_concurrency: int = None,
        version_overrides: Dict[str, List[str]] = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.base_url = (base_url or settings.UPSTREAM_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.UPSTREAM_TIMEOUT
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.UPSTREAM_MAX_CONCURRENCY)
        self._version_overrides = version_overrides if version_overrides is not None else settings.UPSTREAM_VERSIONS
        self._transport = transport

    def versions_for(self, operation: Operation) -> List[str]:
        override = self._version_overrides.get(operation.value)
        if override:
            return list(override)
        return list(DEFAULT_VERSIONS[operation])

    def build_url(self, operation: Operation, version: str) -> str:
        return f"{self.base_url}{OPERATION_PATHS[operation].format(version=version)}"

    async def _request(self, client: httpx.AsyncClient, url: str, params: Dict[str, Any]) -> httpx.Response:
        # Callers queue here; the semaphore is shared by every caller of this client
        async with self._semaphore:
            return await client.get(url, params=params)

    async def fetch(
        self,
        operation: Operation,
        params: Optional[Dict[str, Any]] = None,
        versions: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
    ) -> FetchResult:
        params = {k: v for k, v in (params or {}).items() if v is not None and v != ""}
        version_list = list(versions) if versions is not None else self.versions_for(operation)
        failure = UpstreamFailure(operation=operation)

        async with httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            for version in version_list:
                url = self.build_url(operation, version)
                try:
                    response = await self._request(client, url, params)
                except httpx.HTTPError as e:
                    logger.warning(f"{operation.value} {version} failed: {e!r}. Trying next version...")
                    failure.attempts.append(VersionAttempt(version=version, error=type(e).__name__))
                    continue

                body = response.text
                if response.is_success and body.strip():
                    logger.debug(f"{operation.value} served by {version} ({response.status_code})")
                    return FetchResult(operation=operation, payload=body, version=version)

                logger.warning(
                    f"{operation.value} {version} returned {response.status_code}"
                    f"{' with empty body' if response.is_success else ''}. Trying next version..."
                )
                failure.attempts.append(VersionAttempt(version=version, status_code=response.status_code))

        logger.error(str(failure))
        return FetchResult(operation=operation, failure=failure)

    async def get_latest_movies(self, page: int = 1, limit: int = 10, versions=None) -> FetchResult:
        return await self.fetch(Operation.LATEST, {"page": page, "limit": limit}, versions)

    async def get_movie_detail(self, slug: str, versions=None) -> FetchResult:
        return await self.fetch(Operation.DETAIL, {"slug": slug}, versions)

    async def get_episodes(self, slug: str, versions=None) -> FetchResult:
        return await self.fetch(Operation.EPISODES, {"slug": slug}, versions)

    async def search_movies(self, keyword: str, page: int = 1, limit: int = 10, versions=None) -> FetchResult:
        return await self.fetch(Operation.SEARCH, {"name": keyword, "page": page, "limit": limit}, versions)

    async def filter_movies(
        self,
        type: Optional[str] = None,
        genre: Optional[str] = None,
        country: Optional[str] = None,
        year: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
        versions=None,
    ) -> FetchResult:
        params = {
            "loai_phim": type,
            "the_loai": genre,
            "quoc_gia": country,
            "year": year,
            "page": page,
            "limit": limit,
        }
        return await self.fetch(Operation.FILTER, params, versions)

    async def get_images(self, slug: str, versions=None) -> FetchResult:
        return await self.fetch(Operation.IMAGES, {"slug": slug}, versions, timeout=settings.IMAGE_TIMEOUT)
