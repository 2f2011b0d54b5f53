"""
Downloader module for the tile downloader.
Handles tile coordinate math, rate limiting and concurrent downloads.
"""

from .coords import (
    GeoBoundingBox, TileCoordinate, TileRectangle, ZoomRange,
    count_tiles, rectangle_for, rectangles_for, tile_index_for,
)
from .core import FetchOutcome, FetchResult, TileDownloader
from .pool import BoundedExecutor
from .ratelimit import RateLimiter
from .scheduler import DownloadJob, JobState, JobSummary

__all__ = [
    'GeoBoundingBox', 'TileCoordinate', 'TileRectangle', 'ZoomRange',
    'count_tiles', 'rectangle_for', 'rectangles_for', 'tile_index_for',
    'FetchOutcome', 'FetchResult', 'TileDownloader', 'BoundedExecutor',
    'RateLimiter', 'DownloadJob', 'JobState', 'JobSummary',
]
