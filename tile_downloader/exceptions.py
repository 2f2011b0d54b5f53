"""
Exception types for the tile downloader.
"""


class TileDownloaderException(Exception):
    """Base exception for tile downloader"""
    pass


class ConfigurationError(TileDownloaderException):
    """Configuration related errors"""
    pass


class TransportError(TileDownloaderException):
    """Connection failure, timeout or non-success HTTP status for one tile"""
    pass


class StorageError(TileDownloaderException):
    """Directory creation or file write failure for one tile"""
    pass


class DownloadCancelled(TileDownloaderException):
    """Raised to a worker waiting on the rate limiter while the job shuts down"""
    pass
