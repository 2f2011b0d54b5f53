"""
Tile coordinate math for the slippy-map (Web Mercator) tile grid.
"""
import math
from dataclasses import dataclass
from typing import Iterator, List, Tuple

# Latitude where the Mercator grid is square; beyond it tiles are clamped to the edge row.
MAX_MERCATOR_LAT = 85.0511287798066


@dataclass(frozen=True)
class GeoBoundingBox:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float


@dataclass(frozen=True)
class ZoomRange:
    min_zoom: int
    max_zoom: int

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.min_zoom, self.max_zoom + 1))

    def __len__(self) -> int:
        return max(0, self.max_zoom - self.min_zoom + 1)


@dataclass(frozen=True)
class TileCoordinate:
    zoom: int
    x: int
    y: int

    def path(self, extension: str) -> str:
        """Relative cache path of this tile: ``{zoom}/{x}/{y}.{ext}``."""
        return f"{self.zoom}/{self.x}/{self.y}.{extension}"

    def __str__(self) -> str:
        return f"z={self.zoom} x={self.x} y={self.y}"


@dataclass(frozen=True)
class TileRectangle:
    """Inclusive tile index range covering a bounding box at one zoom level."""
    zoom: int
    x_min: int
    x_max: int
    y_min: int
    y_max: int

    @property
    def tile_count(self) -> int:
        return (self.x_max - self.x_min + 1) * (self.y_max - self.y_min + 1)

    def tiles(self) -> Iterator[TileCoordinate]:
        """Yield every tile in the rectangle, x outer and y inner, both ascending."""
        for x in range(self.x_min, self.x_max + 1):
            for y in range(self.y_min, self.y_max + 1):
                yield TileCoordinate(self.zoom, x, y)


def tile_index_for(lat_deg: float, lon_deg: float, zoom: int) -> Tuple[int, int]:
    """Convert lat/lon to tile indices at the given zoom.

    Args:
        lat_deg: Latitude in degrees
        lon_deg: Longitude in degrees
        zoom: Zoom level (>= 0)

    Returns:
        Tuple of (x, y) tile indices, each within [0, 2**zoom - 1]
    """
    if zoom < 0:
        raise ValueError(f"Zoom level must be non-negative, got {zoom}")

    n = 2 ** zoom
    lat_rad = math.radians(lat_deg)
    # asinh(tan(lat)) == ln(tan(lat) + sec(lat)), finite at the poles
    x = math.floor((lon_deg + 180.0) / 360.0 * n)
    y = math.floor((1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n)

    return _clamp(x, n), _clamp(y, n)


def _clamp(index: int, n: int) -> int:
    return min(max(index, 0), n - 1)


def rectangle_for(bbox: GeoBoundingBox, zoom: int) -> TileRectangle:
    """Compute the tile rectangle covering ``bbox`` at ``zoom``.

    Tile y grows southwards, so the min-latitude corner yields the larger y;
    both axes are normalized with min/max.
    """
    x1, y1 = tile_index_for(bbox.min_lat, bbox.min_lon, zoom)
    x2, y2 = tile_index_for(bbox.max_lat, bbox.max_lon, zoom)

    return TileRectangle(
        zoom=zoom,
        x_min=min(x1, x2),
        x_max=max(x1, x2),
        y_min=min(y1, y2),
        y_max=max(y1, y2),
    )


def rectangles_for(bbox: GeoBoundingBox, zoom_range: ZoomRange) -> List[TileRectangle]:
    return [rectangle_for(bbox, zoom) for zoom in zoom_range]


def count_tiles(bbox: GeoBoundingBox, zoom_range: ZoomRange) -> int:
    """Total number of tiles for the bbox across the zoom range."""
    return sum(rect.tile_count for rect in rectangles_for(bbox, zoom_range))
