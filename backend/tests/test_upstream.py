import asyncio

import httpx

from phimcache.services.upstream import Operation, UpstreamClient

from conftest import BASE_URL


def test_stops_at_first_successful_version(upstream_routes):
    client, handler = upstream_routes({
        "/phim-chi-tiet/v3": (500, "boom"),
        "/phim-chi-tiet/v2": (200, {"movie": {"slug": "foo"}}),
        "/phim-chi-tiet/v1": (200, {"movie": {"slug": "never"}}),
    })

    result = asyncio.run(client.get_movie_detail("foo"))

    assert result.ok
    assert result.version == "v2"
    assert handler.paths() == ["/phim-chi-tiet/v3", "/phim-chi-tiet/v2"]
    assert handler.requests[0].url.params["slug"] == "foo"


def test_empty_body_counts_as_failure(upstream_routes):
    client, handler = upstream_routes({
        "/phim-moi/v1": (200, "   "),
        "/phim-moi/v3": (200, {"data": []}),
    })

    result = asyncio.run(client.get_latest_movies(page=2, limit=5))

    assert result.version == "v3"
    assert handler.requests[0].url.params["page"] == "2"
    assert handler.requests[0].url.params["limit"] == "5"


def test_all_versions_exhausted_returns_failure_value(upstream_routes):
    client, handler = upstream_routes({})

    result = asyncio.run(client.fetch(Operation.IMAGES, {"slug": "foo"}))

    assert not result.ok
    assert result.payload is None
    assert [a.version for a in result.failure.attempts] == ["v1", "v3", "v2"]
    assert all(a.status_code == 404 for a in result.failure.attempts)
    assert len(handler.requests) == 3
    assert "images" in str(result.failure)


def test_connection_errors_fall_through_to_next_version():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if request.url.path.endswith("/v1"):
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"data": []})

    client = UpstreamClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    result = asyncio.run(client.search_movies("foo"))

    assert result.ok
    assert result.version == "v3"
    assert calls == ["/phim-data/v1", "/phim-data/v3"]


def test_caller_supplied_versions_override_defaults(upstream_routes):
    client, handler = upstream_routes({"/phim-chi-tiet/v1": (200, {"movie": {}})})

    result = asyncio.run(client.get_movie_detail("foo", versions=["v1"]))

    assert result.ok
    assert handler.paths() == ["/phim-chi-tiet/v1"]


def test_empty_version_list_makes_no_requests(upstream_routes):
    client, handler = upstream_routes({"/phim-chi-tiet/v3": (200, {"movie": {"slug": "x"}})})

    result = asyncio.run(client.fetch(Operation.DETAIL, {"slug": "x"}, versions=[]))

    assert not result.ok
    assert handler.requests == []
    assert result.failure.attempts == []
    assert "no versions" in str(result.failure)


def test_configured_version_overrides():
    client = UpstreamClient(base_url=BASE_URL, version_overrides={"detail": ["v2"]})

    assert client.versions_for(Operation.DETAIL) == ["v2"]
    assert client.versions_for(Operation.LATEST) == ["v1", "v3", "v2"]
    assert client.versions_for(Operation.EPISODES) == ["v3", "v2", "v1"]


def test_filter_drops_empty_params(upstream_routes):
    client, handler = upstream_routes({"/phim-data/v1": (200, {"data": []})})

    asyncio.run(client.filter_movies(type="phim-bo", genre=None, country="", year="2024"))

    params = handler.requests[0].url.params
    assert params["loai_phim"] == "phim-bo"
    assert params["year"] == "2024"
    assert "the_loai" not in params
    assert "quoc_gia" not in params


def test_concurrent_calls_are_bounded_by_semaphore():
    active = 0
    peak = 0

    class SlowTransport(httpx.AsyncBaseTransport):
        async def handle_async_request(self, request):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return httpx.Response(200, json={"data": []}, request=request)

    async def run():
        client = UpstreamClient(base_url=BASE_URL, max_concurrency=2, transport=SlowTransport())
        await asyncio.gather(*[client.get_latest_movies(page=i) for i in range(1, 7)])

    asyncio.run(run())
    assert peak <= 2
