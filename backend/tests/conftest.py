import json

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from phimcache.db.base import Base
from phimcache.services.store import MovieStore

BASE_URL = "https://upstream.test"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(db):
    return MovieStore(db)


class RecordingHandler:
    """MockTransport handler that answers from a {path: response} map and records every request."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, text="")
        if callable(route):
            return route(request)
        status, body = route
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body)

    def paths(self):
        return [r.url.path for r in self.requests]


@pytest.fixture
def upstream_routes():
    """Build an UpstreamClient backed by a RecordingHandler."""
    from phimcache.services.upstream import UpstreamClient

    def build(routes, **kwargs):
        handler = RecordingHandler(routes)
        client = UpstreamClient(base_url=BASE_URL, transport=httpx.MockTransport(handler), **kwargs)
        return client, handler

    return build


def movie_payload(slug="foo", **overrides):
    """MOVIE dialect detail document with two servers for two episodes."""
    movie = {
        "slug": slug,
        "name": "Foo Movie",
        "origin_name": "Foo Original",
        "content": "A film about foo.",
        "poster_url": "https://img.test/foo-poster.jpg",
        "thumb_url": "https://img.test/foo-thumb.jpg",
        "year": 2023,
        "category": [{"name": "Action"}, {"name": "Drama"}],
        "country": [{"name": "Korea"}],
        "view": 10,
    }
    movie.update(overrides)
    return {
        "status": True,
        "movie": movie,
        "episodes": [
            {
                "server_name": "Vietsub #1",
                "server_data": [
                    {
                        "name": "1",
                        "slug": "tap-1",
                        "link_embed": "https://player.test/embed/ep1",
                        "link_m3u8": "https://cdn.test/ep1/1080p/index.m3u8",
                    },
                    {
                        "name": "2",
                        "slug": "tap-2",
                        "link_embed": "https://player.test/embed/ep2",
                        "link_m3u8": "",
                    },
                ],
            }
        ],
    }


def dumps(payload) -> str:
    return json.dumps(payload, ensure_ascii=False)
