"""
Core downloader functionality for map tiles.
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import requests
from requests.adapters import HTTPAdapter

from ..exceptions import DownloadCancelled, StorageError, TransportError
from ..storage import LocalStorage
from .coords import TileCoordinate
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "tile-downloader/0.1.0 (contact@example.com)"


class FetchOutcome(Enum):
    DOWNLOADED = "downloaded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class FetchResult:
    """Result of fetching a single tile."""
    tile: TileCoordinate
    outcome: FetchOutcome
    reason: Optional[str] = None


class TileDownloader:
    """Downloads single map tiles into a local tile cache."""

    def __init__(self, storage: LocalStorage, rate_limiter: RateLimiter, base_url: str,
                 extension: str = 'png', user_agent: str = DEFAULT_USER_AGENT,
                 connect_timeout: float = 5.0, read_timeout: float = 5.0,
                 chunk_size: int = 4096, pool_size: int = 4):
        """Initialize the TileDownloader.

        Args:
            storage: Tile cache to check and write
            rate_limiter: Shared permit pool consulted before each request
            base_url: Tile server root, tiles are fetched from {base_url}/{z}/{x}/{y}.{ext}
            extension: Tile file extension
            user_agent: Identifying User-Agent required by tile server usage policies
            connect_timeout: Seconds to wait for the connection
            read_timeout: Seconds to wait between bytes of the response
            chunk_size: Bytes per streamed chunk
            pool_size: Connections kept per session
        """
        self.storage = storage
        self.rate_limiter = rate_limiter
        self.base_url = base_url.rstrip('/')
        self.extension = extension.lstrip('.')
        self.headers = {'User-Agent': user_agent}
        self.timeout = (connect_timeout, read_timeout)
        self.chunk_size = chunk_size
        self.pool_size = pool_size
        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._sessions_lock = threading.Lock()

    def tile_url(self, tile: TileCoordinate) -> str:
        return f"{self.base_url}/{tile.zoom}/{tile.x}/{tile.y}.{self.extension}"

    def tile_path(self, tile: TileCoordinate) -> str:
        return tile.path(self.extension)

    def create_session(self) -> requests.Session:
        """Create a session for one worker thread.

        Retries are disabled; a failed tile is left for the next run.
        """
        session = requests.Session()
        adapter = HTTPAdapter(
            max_retries=0,
            pool_connections=self.pool_size,
            pool_maxsize=self.pool_size
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _session(self) -> requests.Session:
        session = getattr(self._local, 'session', None)
        if session is None:
            session = self.create_session()
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def fetch(self, tile: TileCoordinate) -> FetchResult:
        """Fetch one tile into the cache unless it is already there.

        Never raises for per-tile problems: transport and storage errors are
        reported as FAILED, a closed rate limiter as CANCELLED.
        """
        path = self.tile_path(tile)

        if self.storage.exists(path):
            logger.debug(f"Skipping cached tile {tile}")
            return FetchResult(tile, FetchOutcome.SKIPPED)

        try:
            self.rate_limiter.acquire()
        except DownloadCancelled:
            logger.debug(f"Abandoned tile {tile}: job is shutting down")
            return FetchResult(tile, FetchOutcome.CANCELLED, "cancelled")

        try:
            self.storage.ensure_directory(path)
            size = self._transfer(tile, path)
        except TransportError as e:
            return self._failed(tile, e)
        except requests.exceptions.RequestException as e:
            return self._failed(tile, TransportError(f"{type(e).__name__}: {e}"))
        except StorageError as e:
            return self._failed(tile, e)
        except OSError as e:
            return self._failed(tile, StorageError(f"{type(e).__name__}: {e}"))

        logger.info(f"Downloaded: {tile} ({size} bytes)")
        return FetchResult(tile, FetchOutcome.DOWNLOADED)

    def _transfer(self, tile: TileCoordinate, path: str) -> int:
        url = self.tile_url(tile)
        logger.debug(f"Downloading tile: {url}")

        with self._session().get(url, headers=self.headers, timeout=self.timeout,
                                 stream=True) as response:
            if not 200 <= response.status_code < 300:
                raise TransportError(f"HTTP {response.status_code} for {url}")
            return self.storage.write_stream(path, response.iter_content(self.chunk_size))

    def _failed(self, tile: TileCoordinate, error: Exception) -> FetchResult:
        reason = f"{type(error).__name__}: {error}"
        logger.warning(f"Failed to download {tile}: {reason}")
        return FetchResult(tile, FetchOutcome.FAILED, reason)

    def close(self):
        """Close every per-thread session."""
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
