import logging
import signal
import threading
import time

import pytest

from tile_downloader import __main__ as cli
from tile_downloader.downloader.core import TileDownloader

REGION_ARGS = [
    "--min-lat", "20.3756", "--max-lat", "26.6315",
    "--min-lon", "88.0083", "--max-lon", "92.6727",
]


@pytest.fixture(autouse=True)
def isolated_cli(monkeypatch, tmp_path):
    """Keep the CLI away from the real environment, logging and signal handlers."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(signal, "signal", lambda *args: None)


def test_dry_run_prints_plan(capsys):
    code = cli.main(REGION_ARGS + ["--min-zoom", "0", "--max-zoom", "2", "--dry-run"])

    out = capsys.readouterr().out
    assert code == 0
    assert "zoom" in out
    assert "total" in out
    assert len(out.strip().splitlines()) == 5


def test_missing_bounds_is_config_error():
    assert cli.main(["--max-zoom", "2"]) == cli.EXIT_CONFIG_ERROR


def test_full_run(monkeypatch, tmp_path, tile_server, capsys):
    monkeypatch.setattr(TileDownloader, "create_session", lambda self: tile_server.session())
    output = tmp_path / "out"

    code = cli.main(REGION_ARGS + [
        "--min-zoom", "0", "--max-zoom", "3",
        "--output-root", str(output),
        "--tile-server-url", "https://tiles.example.com",
        "--rate-limit-permits", "100",
    ])

    assert code == 0
    assert (output / "0" / "0" / "0.png").exists()
    assert "completed" in capsys.readouterr().out
    assert all(r.headers["User-Agent"] for r in tile_server.requests)


def test_dotenv_in_working_directory_is_read(monkeypatch, tmp_path, capsys):
    env = {
        "TILE_DOWNLOADER_MIN_LAT": "20.3756",
        "TILE_DOWNLOADER_MAX_LAT": "26.6315",
        "TILE_DOWNLOADER_MIN_LON": "88.0083",
        "TILE_DOWNLOADER_MAX_LON": "92.6727",
    }
    for key in env:
        # Registers the key so values loaded from .env are removed afterwards
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    (tmp_path / ".env").write_text("".join(f"{k}={v}\n" for k, v in env.items()))

    code = cli.main(["--max-zoom", "1", "--dry-run"])

    assert code == 0
    assert "total" in capsys.readouterr().out


def test_effective_configuration_is_logged(monkeypatch, tmp_path, tile_server, caplog):
    monkeypatch.setattr(TileDownloader, "create_session", lambda self: tile_server.session())
    caplog.set_level(logging.DEBUG, logger="tile_downloader.__main__")

    code = cli.main(REGION_ARGS + [
        "--max-zoom", "0", "--output-root", str(tmp_path / "out"),
        "--tile-server-url", "https://tiles.example.com",
    ])

    assert code == 0
    assert "Effective configuration" in caplog.text
    assert "'min_lat': 20.3756" in caplog.text


def test_interrupt_signal_cancels_run(monkeypatch, tmp_path, tile_server, capsys):
    monkeypatch.setattr(TileDownloader, "create_session", lambda self: tile_server.session())
    handlers = {}
    monkeypatch.setattr(signal, "signal", lambda signum, handler: handlers.setdefault(signum, handler))

    def interrupt():
        # The first request means the job is running and waiting on its next permit
        while not tile_server.requests:
            time.sleep(0.01)
        time.sleep(0.2)
        handlers[signal.SIGINT](signal.SIGINT, None)

    timer = threading.Thread(target=interrupt, daemon=True)
    timer.start()
    code = cli.main(REGION_ARGS + [
        "--min-zoom", "0", "--max-zoom", "5",
        "--output-root", str(tmp_path / "out"),
        "--tile-server-url", "https://tiles.example.com",
        "--rate-limit-permits", "1", "--refill-interval", "60",
    ])
    timer.join(timeout=1)

    assert code == 1
    assert signal.SIGTERM in handlers
    assert len(tile_server.requests) == 1
    assert capsys.readouterr().out.startswith("cancelled")
