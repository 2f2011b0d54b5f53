"""
Region tile downloader: fetches the map tiles covering a bounding box
across a range of zoom levels into a resumable local tile cache.
"""

__version__ = "0.1.0"
