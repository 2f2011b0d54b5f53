"""
Main entry point for the tile downloader application.
"""
import sys
import signal
import logging
import argparse
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

from tile_downloader.config import Config
from tile_downloader.downloader import (
    DownloadJob, JobSummary, RateLimiter, TileDownloader, rectangles_for,
)
from tile_downloader.exceptions import ConfigurationError
from tile_downloader.storage import LocalStorage
from tile_downloader.utils import format_plan, setup_logging

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


class MapTileDownloader:
    """Main application class: wires storage, limiter and downloader into a job."""

    def __init__(self, config: Config):
        """Initialize the application.

        Args:
            config: Validated configuration
        """
        self.config = config
        self.job: Optional[DownloadJob] = None

    def plan(self) -> str:
        return format_plan(rectangles_for(self.config.bbox, self.config.zoom_range))

    def run(self) -> JobSummary:
        """Run the download job to completion, timeout or cancellation."""
        config = self.config
        logger.info("Starting tile downloader")
        logger.debug(f"Effective configuration: {config.as_dict()}")

        storage = LocalStorage(config.output_root)
        if config.cleanup_partials:
            storage.cleanup_partials()

        rate_limiter = RateLimiter(config.permits, config.refill_interval)
        downloader = TileDownloader(
            storage=storage,
            rate_limiter=rate_limiter,
            base_url=config.tile_server_url,
            extension=config.extension,
            user_agent=config.user_agent,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            chunk_size=config.chunk_size,
            pool_size=config.concurrency
        )
        self.job = DownloadJob(
            bbox=config.bbox,
            zoom_range=config.zoom_range,
            downloader=downloader,
            rate_limiter=rate_limiter,
            concurrency=config.concurrency,
            max_pending=config.max_pending,
            overall_timeout=config.overall_timeout
        )

        try:
            return self.job.run()
        finally:
            downloader.close()

    def cancel(self, signum=None, frame=None):
        """Signal handler: ask the running job to stop."""
        if self.job is not None:
            self.job.cancel()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog='tile-downloader',
        description='Download the map tiles covering a bounding box across a range of zoom levels.'
    )
    parser.add_argument('--config', type=str, default=None,
                        help='Path to a YAML configuration file')
    parser.add_argument('--dry-run', action='store_true',
                        help='Print the tile ranges per zoom level and exit')

    region = parser.add_argument_group('region')
    region.add_argument('--min-lat', type=float)
    region.add_argument('--max-lat', type=float)
    region.add_argument('--min-lon', type=float)
    region.add_argument('--max-lon', type=float)
    region.add_argument('--min-zoom', type=int)
    region.add_argument('--max-zoom', type=int)

    source = parser.add_argument_group('tile server')
    source.add_argument('--tile-server-url', type=str,
                        help='Tiles are fetched from {url}/{z}/{x}/{y}.{ext}')
    source.add_argument('--extension', type=str, help='Tile file extension (default: png)')
    source.add_argument('--user-agent', type=str,
                        help='Identifying User-Agent with a contact reference')
    source.add_argument('--connect-timeout', type=float)
    source.add_argument('--read-timeout', type=float)

    download = parser.add_argument_group('download')
    download.add_argument('--concurrency', type=int, help='Number of worker threads')
    download.add_argument('--rate-limit-permits', type=int,
                          help='Downloads that may start per refill interval')
    download.add_argument('--refill-interval', type=float, help='Seconds between refills')
    download.add_argument('--overall-timeout', type=float,
                          help='Seconds before the job gives up on outstanding tiles')
    download.add_argument('--queue-size', type=int,
                          help='Maximum tiles queued ahead of the workers')
    download.add_argument('--chunk-size', type=int)

    output = parser.add_argument_group('output')
    output.add_argument('--output-root', type=str, help='Directory for {z}/{x}/{y}.{ext} tiles')
    output.add_argument('--no-cleanup-partials', dest='cleanup_partials',
                        action='store_false', default=None,
                        help='Keep leftover partial files from interrupted runs')
    output.add_argument('--log-level', type=str)
    output.add_argument('--log-file', type=str)

    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> Config:
    """Layer defaults, YAML file, environment and command line flags."""
    config = Config.from_yaml(args.config) if args.config else Config()
    config = config.with_env()
    overrides = {key: value for key, value in vars(args).items()
                 if key not in ('config', 'dry_run')}
    return config.with_overrides(overrides).validate()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    load_dotenv(find_dotenv(usecwd=True))
    args = parse_args(argv)

    try:
        config = load_config(args)
    except ConfigurationError as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    setup_logging(config.log_level, config.log_file)
    app = MapTileDownloader(config)

    if args.dry_run:
        print(app.plan())
        return 0

    signal.signal(signal.SIGINT, app.cancel)
    signal.signal(signal.SIGTERM, app.cancel)

    try:
        summary = app.run()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        return 1

    print(summary.describe())
    for tile, reason in summary.failures:
        print(f"  failed {tile}: {reason}")
    return summary.exit_code


if __name__ == "__main__":
    sys.exit(main())
