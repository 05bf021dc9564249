import asyncio

import httpx
import pytest

from phimcache.schemas import MOVIE_NOT_FOUND_DESCRIPTION, EpisodeRecord, MovieRecord, Quality, ServerType
from phimcache.services.cache import DurableTier, MemoryTier, TieredCache
from phimcache.services.catalog import MovieCatalogService
from phimcache.services.stream_analyzer import StreamServerAnalyzer, make_candidate

from conftest import movie_payload

PLACEHOLDER = "/placeholder.svg?height=450&width=300"


@pytest.fixture
def cache(session_factory):
    return TieredCache([MemoryTier(), DurableTier(session_factory)])


def _catalog(upstream, cache, store, **kwargs):
    return MovieCatalogService(upstream, cache, store, **kwargs)


def test_detail_falls_back_from_v3_to_v2(upstream_routes, cache, store):
    upstream, handler = upstream_routes({
        "/phim-chi-tiet/v3": (500, "internal error"),
        "/phim-chi-tiet/v2": (200, {"status": True, "movie": {
            "slug": "foo", "name": "Foo from v2", "content": "v2 description",
            "poster_url": "https://img.test/p.jpg", "thumb_url": "https://img.test/t.jpg",
        }}),
    })

    movie = asyncio.run(_catalog(upstream, cache, store).get_movie_detail("foo"))

    assert movie.title == "Foo from v2"
    assert movie.description == "v2 description"
    assert not movie.is_placeholder
    assert handler.paths() == ["/phim-chi-tiet/v3", "/phim-chi-tiet/v2"]
    assert store.get_movie("foo").title == "Foo from v2"


def test_detail_returns_placeholder_when_everything_fails(upstream_routes, cache, store):
    upstream, _ = upstream_routes({})

    movie = asyncio.run(_catalog(upstream, cache, store).get_movie_detail("ghost"))

    assert movie.slug == "ghost"
    assert movie.description == MOVIE_NOT_FOUND_DESCRIPTION
    assert movie.is_placeholder
    assert movie.poster_url == PLACEHOLDER
    # the placeholder is never cached
    assert asyncio.run(cache.get("movie_detail:ghost")) is None


def test_detail_served_from_store_when_provider_is_down(upstream_routes, cache, store):
    store.upsert_movie(MovieRecord(slug="foo", title="Stored Foo"))
    upstream, _ = upstream_routes({})

    movie = asyncio.run(_catalog(upstream, cache, store).get_movie_detail("foo"))

    assert movie.title == "Stored Foo"
    assert movie.poster_url == PLACEHOLDER


def test_detail_cross_references_image_endpoint(upstream_routes, cache, store):
    upstream, _ = upstream_routes({
        "/phim-chi-tiet/v3": (200, {"movie": {"slug": "foo", "name": "Foo", "poster_url": "https://img.test/p.jpg"}}),
        "/get-img/v1": (200, {"data": {"poster": "https://img.test/other.jpg", "thumb": "https://img.test/t.jpg"}}),
    })

    movie = asyncio.run(_catalog(upstream, cache, store).get_movie_detail("foo"))

    assert movie.poster_url == "https://img.test/p.jpg"
    assert movie.thumb_url == "https://img.test/t.jpg"


def test_second_detail_read_is_served_from_cache(upstream_routes, cache, store):
    upstream, handler = upstream_routes({"/phim-chi-tiet/v3": (200, movie_payload())})
    catalog = _catalog(upstream, cache, store)

    async def run():
        await catalog.get_movie_detail("foo")
        return await catalog.get_movie_detail("foo")

    movie = asyncio.run(run())

    assert movie.title == "Foo Movie"
    assert len(handler.requests) == 1
    assert catalog.cache_stats().hits["memory"] == 1


def test_latest_movies_enriches_and_caches_without_placeholders(upstream_routes, cache, store):
    upstream, handler = upstream_routes({
        "/phim-moi/v1": (200, {
            "items": [
                {"slug": "a", "name": "A", "poster_url": "https://img.test/a.jpg"},
                {"slug": "b", "name": "B"},
            ],
            "pagination": {"totalItems": 2, "totalPages": 1, "currentPage": 1},
        }),
        "/get-img/v1": lambda request: (
            httpx.Response(200, json={"data": {"thumb": "https://img.test/a-thumb.jpg"}})
            if request.url.params["slug"] == "a"
            else httpx.Response(404)
        ),
    })
    catalog = _catalog(upstream, cache, store)

    response = asyncio.run(catalog.get_latest_movies(page=1, limit=10))

    a, b = response.data
    assert a.poster_url == "https://img.test/a.jpg"
    assert a.thumb_url == "https://img.test/a-thumb.jpg"
    assert b.poster_url == PLACEHOLDER
    assert response.pagination.total_items == 2

    cached = asyncio.run(cache.get("latest_movies:1:10")).value
    assert cached["data"][1]["poster_url"] is None

    again = asyncio.run(catalog.get_latest_movies(page=1, limit=10))
    assert again.data[1].poster_url == PLACEHOLDER
    assert handler.paths().count("/phim-moi/v1") == 1


def test_latest_movies_upstream_failure_is_empty(upstream_routes, cache, store):
    upstream, _ = upstream_routes({})

    response = asyncio.run(_catalog(upstream, cache, store).get_latest_movies(page=2, limit=5))

    assert response.data == []
    assert response.pagination.current_page == 2
    assert response.pagination.limit == 5


def test_search_and_filter(upstream_routes, cache, store):
    upstream, handler = upstream_routes({
        "/phim-data/v1": (200, {"data": [{"slug": "x", "name": "X", "poster_url": "p", "thumb_url": "t"}]}),
    })
    catalog = _catalog(upstream, cache, store)

    found = asyncio.run(catalog.search_movies("  Xyz "))
    filtered = asyncio.run(catalog.filter_movies(genre="hanh-dong", year="2024"))
    blank = asyncio.run(catalog.search_movies(""))

    assert [m.slug for m in found.data] == ["x"]
    assert [m.slug for m in filtered.data] == ["x"]
    assert blank.data == []
    assert handler.requests[0].url.params["name"] == "Xyz"
    assert handler.requests[1].url.params["the_loai"] == "hanh-dong"


def test_get_episodes_syncs_when_store_is_empty(upstream_routes, cache, store):
    upstream, handler = upstream_routes({"/phim-chi-tiet/v3": (200, movie_payload())})
    catalog = _catalog(upstream, cache, store)

    episodes = asyncio.run(catalog.get_episodes("foo"))
    again = asyncio.run(catalog.get_episodes("foo"))

    assert [e.episode_number for e in episodes] == [1, 2]
    # embed is only primary when no m3u8 link exists
    assert episodes[0].url.endswith(".m3u8")
    assert episodes[1].url == "https://player.test/embed/ep2"
    assert len(again) == 2
    assert len(handler.requests) == 1


def test_best_stream_prefers_type_priority_over_quality(upstream_routes, cache, store):
    upstream, _ = upstream_routes({})
    store.upsert_movie(MovieRecord(slug="foo"))
    episode = store.add_episode(EpisodeRecord(
        movie_slug="foo",
        episode_number=1,
        servers=[
            make_candidate("https://player.test/embed/480p"),
            make_candidate("https://cdn.test/1080p/index.m3u8"),
        ],
    ))
    analyzer = StreamServerAnalyzer(store, transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    catalog = _catalog(upstream, cache, store, analyzer=analyzer)

    info = asyncio.run(catalog.get_best_stream(episode.id, "HD"))

    assert info.success
    assert info.server.type == ServerType.SEGMENTED_STREAM
    assert info.server.quality == Quality.FHD


def test_sync_and_views_pass_through(upstream_routes, cache, store):
    upstream, _ = upstream_routes({"/phim-chi-tiet/v3": (200, movie_payload())})
    catalog = _catalog(upstream, cache, store)

    result = asyncio.run(catalog.sync_episodes("foo"))

    assert result.added == 2
    assert catalog.increment_views("foo") == 11
