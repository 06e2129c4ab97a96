"""In-process stand-ins for ``requests`` so the suite never touches the network."""

from __future__ import annotations

import json
import threading
from collections import defaultdict, deque
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import urlsplit

import pytest

from ollastream import config as config_module
from ollastream.config import AppConfig
from ollastream.models import ServerEndpoint


class FakeResponse:
    """Minimal ``requests.Response`` double.

    ``chunks`` are handed out by :meth:`iter_content`; with ``hold_open`` the
    body then blocks until :meth:`close` is called, like a stalled socket.
    """

    def __init__(
        self,
        status_code: int = 200,
        json_data: Any = None,
        *,
        text: Optional[str] = None,
        chunks: Iterable[bytes] = (),
        headers: Optional[Dict[str, str]] = None,
        hold_open: bool = False,
    ) -> None:
        self.status_code = status_code
        self._json = json_data
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        self.text = text
        self.headers = headers or {}
        self._chunks = list(chunks)
        self.hold_open = hold_open
        self.closed = threading.Event()

    def json(self) -> Any:
        if self._json is not None:
            return self._json
        return json.loads(self.text)

    def iter_content(self, chunk_size=None):
        for chunk in self._chunks:
            if self.closed.is_set():
                return
            yield chunk
        if self.hold_open:
            self.closed.wait(5)

    def close(self) -> None:
        self.closed.set()


Reply = Union[FakeResponse, BaseException]


class FakeSession:
    """Routes requests by method and path to queued replies.

    The last queued reply for a route is reused once the queue runs dry.
    """

    def __init__(self) -> None:
        self._routes: Dict[Tuple[str, str], Deque[Reply]] = defaultdict(deque)
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def queue(self, method: str, path: str, *replies: Reply) -> "FakeSession":
        self._routes[(method.upper(), path)].extend(replies)
        return self

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._dispatch("GET", url, kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._dispatch("POST", url, kwargs)

    def calls_to(self, method: str, path: str) -> List[Dict[str, Any]]:
        return [kwargs for m, p, kwargs in self.calls if m == method and p == path]

    def _dispatch(self, method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        path = urlsplit(url).path
        with self._lock:
            self.calls.append((method, path, kwargs))
            replies = self._routes.get((method, path))
            if not replies:
                raise AssertionError(f"Unexpected request: {method} {path}")
            reply = replies.popleft() if len(replies) > 1 else replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ndjson(*objects: Any) -> bytes:
    return b"".join(json.dumps(item).encode("utf-8") + b"\n" for item in objects)


def tags_payload(*names: str) -> Dict[str, Any]:
    return {
        "models": [
            {"name": name, "size": 4_700_000_000, "modified_at": "2024-05-01T10:00:00.123456789Z"}
            for name in names
        ]
    }


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep developer .env files and OLLAMA_* variables out of the tests."""

    monkeypatch.setattr(config_module, "_DOTENV_LOADED", True)
    for key in (
        "OLLAMA_HOST",
        "OLLAMA_TIMEOUT",
        "OLLAMA_MODEL",
        "OLLAMA_MAX_TOKENS",
        "OLLAMA_TEMPERATURE",
        "OLLAMA_REQUEST_TIMEOUT",
        "OLLAMA_AUTO_START",
        "OLLAMA_FORCE_RECHECK",
        "OLLAMA_ENABLE_CACHE",
        "OLLAMA_EXECUTABLE",
        "APP_CONFIG_FILE",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def endpoint() -> ServerEndpoint:
    return ServerEndpoint()


@pytest.fixture
def app_config() -> AppConfig:
    config = AppConfig()
    config.ollama.default_model = "llama3:8b"
    config.resilience.jitter = 0.0
    return config


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def record_sleep(sleeps):
    return sleeps.append
