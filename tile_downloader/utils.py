"""
Utility functions for the tile downloader.
"""
import os
import logging
from typing import List, Optional

from .downloader.coords import TileRectangle

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_level: str = 'INFO', log_file: Optional[str] = None) -> None:
    """Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file. If None, logs only to console.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )

    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('requests').setLevel(logging.WARNING)


def format_plan(rectangles: List[TileRectangle]) -> str:
    """Render the per-zoom tile rectangles as a table for a dry run."""
    lines = [f"{'zoom':>4}  {'x range':>17}  {'y range':>17}  {'tiles':>12}"]
    total = 0
    for rect in rectangles:
        total += rect.tile_count
        lines.append(
            f"{rect.zoom:>4}  {f'{rect.x_min}-{rect.x_max}':>17}  "
            f"{f'{rect.y_min}-{rect.y_max}':>17}  {rect.tile_count:>12,}"
        )
    lines.append(f"{'total':>42}  {total:>12,}")
    return "\n".join(lines)
