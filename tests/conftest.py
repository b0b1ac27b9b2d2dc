from __future__ import annotations

import fakeredis
import httpx
import pytest

from delaytask.client import TaskClient
from delaytask.handlers import HandlerRegistry
from delaytask.storage import Storage

NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def make_storage(redis_server):
    def factory() -> Storage:
        client = fakeredis.FakeRedis(server=redis_server, decode_responses=True)
        return Storage(client, prefix="t_", bucket_count=4)

    return factory


@pytest.fixture
def storage(make_storage) -> Storage:
    return make_storage()


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def client(storage, registry, clock) -> TaskClient:
    return TaskClient(storage, registry, priorities=(1, 2, 3), clock=clock)


@pytest.fixture
def http_calls():
    return []


@pytest.fixture
def make_http_client(http_calls):
    """httpx client whose every request answers with the given body."""

    def factory(body: str = "success") -> httpx.Client:
        def handler(request: httpx.Request) -> httpx.Response:
            http_calls.append(request)
            return httpx.Response(200, text=body)

        return httpx.Client(transport=httpx.MockTransport(handler))

    return factory
