"""
Local filesystem storage for downloaded tiles.
Tiles are written to a temp file and renamed into place, so a tile path
either does not exist or holds a complete tile.
"""
import os
import uuid
import logging
from typing import Iterable, List

from .exceptions import StorageError

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = '.part'


class LocalStorage:
    """Local filesystem storage backend."""

    def __init__(self, base_path: str):
        """Initialize local storage.

        Args:
            base_path: Base path for all files
        """
        self.base_path = os.path.abspath(base_path)
        try:
            os.makedirs(self.base_path, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create output directory {self.base_path}: {e}") from e
        logger.info(f"Initialized local storage at {self.base_path}")

    def full_path(self, path: str) -> str:
        return os.path.join(self.base_path, path)

    def exists(self, path: str) -> bool:
        """Check if a file exists locally."""
        return os.path.exists(self.full_path(path))

    def ensure_directory(self, path: str) -> str:
        """Create the parent directory of ``path`` if needed.

        Returns:
            The absolute directory path
        """
        directory = os.path.dirname(self.full_path(path))
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create directory {directory}: {e}") from e
        return directory

    def write_stream(self, path: str, chunks: Iterable[bytes]) -> int:
        """Write chunks to ``path`` atomically.

        The data goes to a uniquely named temp file next to the target and is
        renamed over it only after the last chunk is written. If anything
        fails, including the chunk iterator itself, the temp file is removed
        and the exception propagates.

        Args:
            path: Relative path to save the data to
            chunks: Iterable of byte chunks

        Returns:
            int: Number of bytes written
        """
        full_path = self.full_path(path)
        temp_path = f"{full_path}.{uuid.uuid4().hex}{PARTIAL_SUFFIX}"
        written = 0

        try:
            with open(temp_path, 'wb') as f:
                for chunk in chunks:
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
            os.replace(temp_path, full_path)
        except BaseException:
            self._discard(temp_path)
            raise

        logger.debug(f"Saved {written} bytes to {full_path}")
        return written

    def _discard(self, temp_path: str):
        try:
            os.remove(temp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial file {temp_path}: {e}")

    def list_files(self, prefix: str = '') -> List[str]:
        """List complete files in the local directory."""
        result = []
        base = os.path.join(self.base_path, prefix) if prefix else self.base_path

        for root, _, files in os.walk(base):
            for file in files:
                if file.endswith(PARTIAL_SUFFIX):
                    continue
                full_path = os.path.join(root, file)
                result.append(os.path.relpath(full_path, self.base_path).replace(os.sep, '/'))

        return sorted(result)

    def cleanup_partials(self) -> int:
        """Remove temp files left behind by an interrupted run.

        Returns:
            Number of files removed
        """
        removed_count = 0

        for root, _, files in os.walk(self.base_path):
            for name in files:
                if not name.endswith(PARTIAL_SUFFIX):
                    continue
                file_path = os.path.join(root, name)
                try:
                    os.remove(file_path)
                    removed_count += 1
                    logger.debug(f"Removed partial file: {file_path}")
                except OSError as e:
                    logger.error(f"Error removing partial file {file_path}: {e}")

        if removed_count:
            logger.info(f"Cleaned up {removed_count} partial files from {self.base_path}")
        return removed_count
