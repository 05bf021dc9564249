"""
Stream server classification and ranking.

A raw candidate URL is classified by transport type, given a best-effort
quality label from its URL tokens, probed for reachability and ranked.
Ranking is by type first (segmented-stream < direct-file < embed < unknown),
then working servers ahead of non-working ones. Quality never reorders the
list; it is only used by best_streaming_info() to pick among ranked servers.
"""
import asyncio
import re
import httpx
from typing import Iterable, List, Optional
from urllib.parse import parse_qs, unquote, urlsplit
import logging

from phimcache.core.config import settings
from phimcache.schemas import Quality, ServerCandidate, ServerType, StreamingInfo

logger = logging.getLogger(__name__)

MANIFEST_EXTENSIONS = (".m3u8", ".mpd")
EMBED_MARKERS = ("embed", "player")

TYPE_PRIORITY = {
    ServerType.SEGMENTED_STREAM: 1,
    ServerType.DIRECT_FILE: 2,
    ServerType.EMBED: 3,
    ServerType.UNKNOWN: 4,
}

_FHD_PATTERN = re.compile(r"(2160|1440|1080)p|fullhd|fhd")
_SD_PATTERN = re.compile(r"(480|360|240)p")
_HD_TOKEN = re.compile(r"(?<![a-z])hd(?![a-z])")


def classify_url(url: Optional[str]) -> ServerType:
    if not url or not url.strip():
        return ServerType.UNKNOWN

    # a manifest extension anywhere wins over embed markers
    lowered = url.strip().lower()
    if any(ext in lowered for ext in MANIFEST_EXTENSIONS):
        return ServerType.SEGMENTED_STREAM
    if any(marker in lowered for marker in EMBED_MARKERS):
        return ServerType.EMBED
    return ServerType.DIRECT_FILE


def infer_quality(url: Optional[str]) -> Quality:
    """Best-effort label from URL tokens. An empty URL is SD; no marker at all means HD."""
    if not url:
        return Quality.SD

    lowered = url.lower()
    if _FHD_PATTERN.search(lowered):
        return Quality.FHD
    if "720p" in lowered:
        return Quality.HD
    if _SD_PATTERN.search(lowered):
        return Quality.SD
    if _HD_TOKEN.search(lowered):
        return Quality.HD
    return Quality.HD


def type_priority(server_type: ServerType) -> int:
    return TYPE_PRIORITY.get(server_type, TYPE_PRIORITY[ServerType.UNKNOWN])


def rank_servers(servers: Iterable[ServerCandidate]) -> List[ServerCandidate]:
    ranked = []
    for server in servers:
        server.priority = type_priority(server.type)
        ranked.append(server)
    # sorted() is stable, so equal keys keep their upstream order
    return sorted(ranked, key=lambda s: (s.priority, not s.is_working))


def make_candidate(url: str, name: Optional[str] = None) -> ServerCandidate:
    server_type = classify_url(url)
    return ServerCandidate(
        name=name or _default_name(server_type),
        url=url.strip(),
        type=server_type,
        quality=infer_quality(url),
        priority=type_priority(server_type),
    )


def _default_name(server_type: ServerType) -> str:
    return {
        ServerType.SEGMENTED_STREAM: "M3U8 Stream",
        ServerType.EMBED: "Embed Player",
        ServerType.DIRECT_FILE: "Default Server",
    }.get(server_type, "Unknown Server")


def extract_manifest_url(url: str) -> Optional[str]:
    """Pull the manifest out of a player URL such as player.example/?url=<encoded .m3u8>."""
    query = parse_qs(urlsplit(url).query)
    for value in query.get("url", []):
        candidate = unquote(value).strip()
        if any(ext in candidate.lower() for ext in MANIFEST_EXTENSIONS):
            return candidate
    return None


def candidates_from_url(url: str, name: Optional[str] = None) -> List[ServerCandidate]:
    """All candidates derivable from one raw URL (a player link may also expose its manifest)."""
    primary = make_candidate(url, name)
    candidates = [primary]
    manifest = extract_manifest_url(url)
    if manifest and manifest != primary.url:
        candidates.append(make_candidate(manifest, "Direct M3U8"))
    return candidates


def candidates_from_links(
    server_name: Optional[str],
    m3u8: Optional[str] = None,
    embed: Optional[str] = None,
    url: Optional[str] = None,
) -> List[ServerCandidate]:
    """
    Candidates for one structured episode item.

    Manifest and embed links are kept as separate candidates; the ranking
    decides which one is primary. A bare url is only used when neither is present.
    """
    candidates = []
    if m3u8:
        candidates.append(make_candidate(m3u8, server_name or "M3U8 Stream"))
    if embed:
        candidates.append(make_candidate(embed, server_name or "Embed Player"))
    if not candidates and url:
        candidates.extend(candidates_from_url(url, server_name))
    return candidates


class StreamServerAnalyzer:
    def __init__(
        self,
        store,
        probe_timeout: float = None,
        probe_concurrency: int = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.store = store
        self.probe_timeout = probe_timeout if probe_timeout is not None else settings.PROBE_TIMEOUT
        self.probe_concurrency = probe_concurrency or settings.PROBE_CONCURRENCY
        self._transport = transport

    async def _probe(self, client: httpx.AsyncClient, url: str) -> bool:
        if not url.lower().startswith(("http://", "https://")):
            return False
        try:
            response = await client.head(url)
            if response.status_code == 405:
                # Some hosts refuse HEAD; open a GET stream and drop it after the headers
                async with client.stream("GET", url) as streamed:
                    return streamed.status_code < 400
            return response.status_code < 400
        except httpx.HTTPError as e:
            logger.debug(f"Probe failed for {url}: {e!r}")
            return False

    async def probe_servers(self, servers: List[ServerCandidate]) -> None:
        semaphore = asyncio.Semaphore(self.probe_concurrency)

        async with httpx.AsyncClient(
            timeout=self.probe_timeout, follow_redirects=True, transport=self._transport
        ) as client:
            async def probe_one(server: ServerCandidate):
                async with semaphore:
                    server.is_working = await self._probe(client, server.url)

            await asyncio.gather(*[probe_one(s) for s in servers])

    async def analyze(self, episode_id: str) -> List[ServerCandidate]:
        """Re-classify, probe and rank the stored servers of an episode, best first."""
        episode = self.store.get_episode_by_id(episode_id)
        if episode is None:
            return []

        servers = []
        for stored in episode.servers:
            server_type = classify_url(stored.url)
            servers.append(stored.model_copy(update={
                "type": server_type,
                "quality": infer_quality(stored.url),
                "priority": type_priority(server_type),
            }))

        await self.probe_servers(servers)
        ranked = rank_servers(servers)

        try:
            self.store.update_server_status(ranked)
        except Exception as e:
            logger.warning(f"Could not persist probe results for episode {episode_id}: {e}")

        working = sum(1 for s in ranked if s.is_working)
        logger.info(f"Analyzed {len(ranked)} servers for episode {episode_id} ({working} working)")
        return ranked

    async def best_streaming_info(self, episode_id: str, preferred_quality: str = "HD") -> StreamingInfo:
        episode = self.store.get_episode_by_id(episode_id)
        if episode is None:
            return StreamingInfo(success=False, message="Episode not found", episode_id=episode_id)

        servers = await self.analyze(episode_id)
        best = select_best_server(servers, preferred_quality)
        if best is None:
            return StreamingInfo(success=False, message="No servers available", episode_id=episode_id)

        return StreamingInfo(
            success=True,
            episode_id=episode_id,
            episode_number=episode.episode_number,
            title=episode.title,
            server=best,
            all_servers=servers,
        )


def select_best_server(ranked: List[ServerCandidate], preferred_quality: str = "HD") -> Optional[ServerCandidate]:
    """Lowest-priority server of the preferred quality, else the lowest-priority server overall."""
    if not ranked:
        return None
    wanted = (preferred_quality or "").upper()
    for server in ranked:
        if server.quality.value == wanted:
            return server
    return ranked[0]
