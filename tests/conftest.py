"""
Pytest configuration for the proxy tests.

Upstream servers are replaced by an ``httpx.MockTransport`` so no test touches the network, and the live
source table is injected through the ``get_source_resolver`` dependency.
"""

from typing import Callable, Dict, List, Optional, Union

import httpx
import pytest
from fastapi.testclient import TestClient

from livestream_proxy.configs import LiveSourceConfig
from livestream_proxy.main import app
from livestream_proxy.sources import StaticSourceResolver, get_source_resolver

TEST_SOURCES = [
    LiveSourceConfig(key="test", name="Test TV", url="https://cdn.example.com/live.m3u", ua="TestAgent/1.0"),
    LiveSourceConfig(key="plain", name="Plain TV", url="https://plain.example.com/live.m3u", ua=""),
    LiveSourceConfig(key="off", name="Disabled TV", url="https://off.example.com/live.m3u", disabled=True),
]


class TrackingStream(httpx.AsyncByteStream):
    """Response body that records whether it was read and released."""

    def __init__(self, chunks: List[bytes]):
        self.chunks = chunks
        self.consumed = False
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        self.consumed = True

    async def aclose(self):
        self.closed = True


Route = Union[Callable[[httpx.Request], httpx.Response], dict]


class MockUpstream:
    def __init__(self):
        self.routes: Dict[str, Route] = {}
        self.requests: List[httpx.Request] = []

    def add(
        self,
        url: str,
        status_code: int = 200,
        content: bytes = b"",
        headers: Optional[dict] = None,
        stream: Optional[httpx.AsyncByteStream] = None,
    ):
        self.routes[url] = {"status_code": status_code, "content": content, "headers": headers or {}, "stream": stream}

    def add_redirect(self, url: str, location: str, status_code: int = 302):
        self.add(url, status_code=status_code, headers={"location": location})

    def add_handler(self, url: str, handler: Callable[[httpx.Request], httpx.Response]):
        self.routes[url] = handler

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404)
        if callable(route):
            return route(request)
        if route["stream"] is not None:
            return httpx.Response(route["status_code"], headers=route["headers"], stream=route["stream"])
        return httpx.Response(route["status_code"], headers=route["headers"], content=route["content"])

    def client_factory(self, follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), follow_redirects=follow_redirects)


@pytest.fixture
def upstream(monkeypatch) -> MockUpstream:
    mock = MockUpstream()
    monkeypatch.setattr("livestream_proxy.handlers.create_httpx_client", mock.client_factory)
    return mock


@pytest.fixture
def client():
    app.dependency_overrides[get_source_resolver] = lambda: StaticSourceResolver(TEST_SOURCES)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def anyio_backend():
    return "asyncio"
