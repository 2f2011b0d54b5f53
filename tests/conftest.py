import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

import pytest
import requests

from tile_downloader.downloader.core import TileDownloader
from tile_downloader.downloader.ratelimit import RateLimiter
from tile_downloader.storage import LocalStorage

BASE_URL = "https://tiles.example.com"


@dataclass
class RecordedRequest:
    url: str
    path: str
    headers: Dict[str, str]
    timeout: Tuple[float, float]
    stream: bool
    started: float


class FakeResponse:
    def __init__(self, status_code: int, chunks: List[bytes], broken: bool = False):
        self.status_code = status_code
        self.chunks = chunks
        self.broken = broken
        self.closed = False

    def iter_content(self, chunk_size=1):
        for i, chunk in enumerate(self.chunks):
            if self.broken and i > 0:
                raise requests.exceptions.ChunkedEncodingError("Connection broken: IncompleteRead")
            yield chunk

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class FakeSession:
    def __init__(self, server: "FakeTileServer"):
        self.server = server
        self.closed = False

    def get(self, url, headers=None, timeout=None, stream=False):
        return self.server.handle(url, headers or {}, timeout, stream)

    def close(self):
        self.closed = True


class FakeTileServer:
    """In-memory stand-in for an XYZ tile server."""

    def __init__(self, base_url: str = BASE_URL):
        self.base_url = base_url
        self.requests: List[RecordedRequest] = []
        self.status: Dict[str, int] = {}
        self.broken: Set[str] = set()
        self.errors: Dict[str, Exception] = {}
        self.delay = 0.0
        self._lock = threading.Lock()

    @staticmethod
    def body_for(path: str) -> bytes:
        return f"tile:{path}".encode()

    def session(self) -> FakeSession:
        return FakeSession(self)

    def handle(self, url: str, headers, timeout, stream) -> FakeResponse:
        path = url[len(self.base_url) + 1:]
        with self._lock:
            self.requests.append(
                RecordedRequest(url, path, dict(headers), timeout, stream, time.monotonic())
            )
        if self.delay:
            time.sleep(self.delay)
        if path in self.errors:
            raise self.errors[path]
        body = self.body_for(path)
        return FakeResponse(self.status.get(path, 200), [body[:5], body[5:]],
                            broken=path in self.broken)

    @property
    def paths(self) -> List[str]:
        with self._lock:
            return [r.path for r in self.requests]


@pytest.fixture
def tile_server() -> FakeTileServer:
    return FakeTileServer()


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(str(tmp_path / "tiles"))


@pytest.fixture
def make_downloader(storage, tile_server):
    """Build a TileDownloader wired to the fake server."""
    created = []

    def factory(rate_limiter: Optional[RateLimiter] = None, **kwargs) -> TileDownloader:
        limiter = rate_limiter or RateLimiter(permits=1000, interval=60)
        downloader = TileDownloader(storage, limiter, BASE_URL, **kwargs)
        downloader.create_session = tile_server.session  # type: ignore
        created.append((downloader, limiter))
        return downloader

    yield factory

    for downloader, limiter in created:
        downloader.close()
        limiter.close()
