import logging
import os
from pathlib import Path

import requests

from tile_downloader.downloader.core import DEFAULT_USER_AGENT, FetchOutcome
from tile_downloader.downloader.coords import TileCoordinate
from tile_downloader.downloader.ratelimit import RateLimiter

from conftest import BASE_URL, FakeTileServer


def test_downloads_tile_into_cache(make_downloader, tile_server: FakeTileServer, storage):
    downloader = make_downloader()
    tile = TileCoordinate(5, 10, 12)

    result = downloader.fetch(tile)

    assert result.outcome is FetchOutcome.DOWNLOADED
    tile_path = Path(storage.full_path("5/10/12.png"))
    assert tile_path.read_bytes() == FakeTileServer.body_for("5/10/12.png")

    request = tile_server.requests[0]
    assert request.url == f"{BASE_URL}/5/10/12.png"
    assert request.headers["User-Agent"] == DEFAULT_USER_AGENT
    assert request.timeout == (5.0, 5.0)
    assert request.stream is True


def test_existing_tile_is_skipped_without_request_or_permit(make_downloader, tile_server, storage):
    limiter = RateLimiter(permits=1, interval=60)
    downloader = make_downloader(rate_limiter=limiter)
    storage.ensure_directory("3/1/2.png")
    Path(storage.full_path("3/1/2.png")).write_bytes(b"cached")

    result = downloader.fetch(TileCoordinate(3, 1, 2))

    assert result.outcome is FetchOutcome.SKIPPED
    assert tile_server.requests == []
    assert limiter.available == 1
    assert Path(storage.full_path("3/1/2.png")).read_bytes() == b"cached"


def test_http_error_status_fails_without_file(make_downloader, tile_server, storage):
    tile_server.status["4/3/2.png"] = 404
    downloader = make_downloader()

    result = downloader.fetch(TileCoordinate(4, 3, 2))

    assert result.outcome is FetchOutcome.FAILED
    assert "404" in result.reason
    assert "TransportError" in result.reason
    assert not storage.exists("4/3/2.png")


def test_mid_transfer_failure_leaves_no_partial_file(make_downloader, tile_server, storage):
    tile_server.broken.add("6/20/30.png")
    downloader = make_downloader()

    result = downloader.fetch(TileCoordinate(6, 20, 30))

    assert result.outcome is FetchOutcome.FAILED
    assert "ChunkedEncodingError" in result.reason
    assert not storage.exists("6/20/30.png")
    assert os.listdir(storage.full_path("6/20")) == []


def test_connection_error_is_a_failure(make_downloader, tile_server, storage):
    tile_server.errors["2/1/1.png"] = requests.exceptions.ConnectTimeout("timed out")
    downloader = make_downloader()

    result = downloader.fetch(TileCoordinate(2, 1, 1))

    assert result.outcome is FetchOutcome.FAILED
    assert "ConnectTimeout" in result.reason
    assert not storage.exists("2/1/1.png")


def test_storage_failure_is_a_failure(make_downloader, tile_server, storage):
    Path(storage.full_path("7")).write_bytes(b"")
    downloader = make_downloader()

    result = downloader.fetch(TileCoordinate(7, 10, 20))

    assert result.outcome is FetchOutcome.FAILED
    assert "StorageError" in result.reason
    assert tile_server.requests == []


def test_closed_limiter_cancels_fetch(make_downloader, tile_server, storage):
    limiter = RateLimiter(permits=1, interval=60)
    limiter.close()
    downloader = make_downloader(rate_limiter=limiter)

    result = downloader.fetch(TileCoordinate(1, 0, 0))

    assert result.outcome is FetchOutcome.CANCELLED
    assert tile_server.requests == []
    assert not storage.exists("1/0/0.png")


def test_failed_tile_is_retried_on_next_fetch(make_downloader, tile_server, storage):
    tile_server.status["3/3/3.png"] = 503
    downloader = make_downloader()
    assert downloader.fetch(TileCoordinate(3, 3, 3)).outcome is FetchOutcome.FAILED

    del tile_server.status["3/3/3.png"]

    assert downloader.fetch(TileCoordinate(3, 3, 3)).outcome is FetchOutcome.DOWNLOADED
    assert storage.exists("3/3/3.png")


def test_tile_url_and_custom_headers(make_downloader):
    downloader = make_downloader(extension=".jpg", user_agent="MyMap/2.0 (me@example.com)")
    downloader.base_url = "https://example.org/tiles"

    assert downloader.tile_url(TileCoordinate(1, 2, 3)) == "https://example.org/tiles/1/2/3.jpg"
    assert downloader.headers == {"User-Agent": "MyMap/2.0 (me@example.com)"}


def test_successful_download_logged_at_info(make_downloader, caplog):
    caplog.set_level(logging.INFO, logger="tile_downloader.downloader.core")
    downloader = make_downloader()

    downloader.fetch(TileCoordinate(5, 10, 12))

    records = [r for r in caplog.records if r.levelno == logging.INFO]
    assert any("Downloaded: z=5 x=10 y=12" in r.getMessage() for r in records)
