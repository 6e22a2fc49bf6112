"""Shared fixtures: a fake Pyrus API behind httpx.MockTransport, a fake clock and a recording sleep."""

import json

import httpx
import pytest

from pyrus_client import PyrusClient, PyrusConfig
from pyrus_executor import ResilientExecutor

AUTH_PATH = "/api/v4/auth"
AUTHOR = {"id": 100, "first_name": "Test", "last_name": "User", "email": "test@example.com"}


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakePyrusAPI:
    """
    Routes requests by (method, path).

    Each route holds a queue of responses; the last one repeats. A response is
    a dict/list (200 JSON), an int status code, an httpx.Response or an
    exception to raise.
    """

    def __init__(self):
        self.calls = []
        self._routes = {}
        self.on("POST", AUTH_PATH, {
            "access_token": "token-1",
            "api_url": "https://api.pyrus.com/v4/",
            "files_url": "https://files.pyrus.com/",
        })

    def on(self, method, path, *responses):
        self._routes[(method, path)] = list(responses)

    def requests_to(self, method, path):
        return [r for r in self.calls if r.method == method and r.url.path == path]

    def count(self, method, path) -> int:
        return len(self.requests_to(method, path))

    @property
    def auth_calls(self) -> int:
        return self.count("POST", AUTH_PATH)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": "not found"})

        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, int):
            return httpx.Response(response, json={"error": f"status {response}"})
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)


def request_json(request: httpx.Request):
    return json.loads(request.content)


@pytest.fixture
def config():
    return PyrusConfig(login="test@example.com", security_key="valid-key-123")


@pytest.fixture
def api():
    return FakePyrusAPI()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
async def client(config, api, clock, sleeper):
    pyrus = PyrusClient(
        config,
        transport=httpx.MockTransport(api),
        executor=ResilientExecutor(sleep=sleeper),
        clock=clock,
    )
    yield pyrus
    await pyrus.aclose()
