# nanostorage/services/storage.py
"""
Blob storage on the local filesystem.

Files are stored by ID in a two-level layout: ``{root}/{id[:2]}/{id}``.
"""
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class BlobStore:
    def __init__(self, root: Path):
        self._root = Path(root)

    def path_for(self, file_id: str) -> Path:
        if not file_id or "/" in file_id or "\\" in file_id or file_id in (".", ".."):
            raise ValueError(f"Invalid file ID: {file_id!r}")
        return self._root / file_id[:2] / file_id

    def exists(self, file_id: str) -> bool:
        try:
            return self.path_for(file_id).is_file()
        except ValueError:
            return False

    def save(self, file_id: str, content: bytes) -> Path:
        path = self.path_for(file_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        logger.debug(f"Stored blob {file_id} ({len(content)} bytes)")
        return path

    def delete(self, file_id: str) -> bool:
        """Delete a blob. Missing blobs are ignored."""
        path = self.path_for(file_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info(f"Deleted blob {file_id}")
        return True
