"""
Read access to uploaded project files.

Files are written by the upload side under ``file_storage_root``; the
pipeline only reads them back by their stored relative path.
"""

import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class FileStorage(Protocol):
    """Storage collaborator consumed by the document loader."""

    def read_bytes(self, relative_path: str) -> bytes | None:
        """Return the stored bytes, or None when the file is absent."""
        ...


class LocalFileStorage:
    """Filesystem storage rooted at a single directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root).resolve()

    def resolve(self, relative_path: str) -> Path | None:
        """
        Map a stored relative path to an absolute path inside the root.

        Returns None for paths that would escape the storage root.
        """
        candidate = (self.root / relative_path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            logger.warning("Rejected storage path outside root: %s", relative_path)
            return None
        return candidate

    def read_bytes(self, relative_path: str) -> bytes | None:
        path = self.resolve(relative_path)
        if path is None:
            return None
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
