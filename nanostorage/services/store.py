# nanostorage/services/store.py
"""
Durable JSON key-value store.

Each store is a single JSON object on disk. Reads and read-modify-write
updates run under a per-store lock. Writes go to a temporary file that
replaces the document atomically.
"""
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator

logger = logging.getLogger(__name__)


class JsonStore:
    """A JSON document of ``key -> value`` entries with atomic updates."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> Dict[str, Any]:
        """Return a snapshot of the whole document (empty if the file is missing)."""
        with self._lock:
            return self._load()

    @contextmanager
    def transaction(self) -> Iterator[Dict[str, Any]]:
        """
        Read-modify-write the document atomically.

        The yielded dict is written back when the block exits without error.
        If the block raises, nothing is written.
        """
        with self._lock:
            data = self._load()
            yield data
            self._dump(data)

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        with open(self._path, "r", encoding="utf-8") as f:
            content = f.read()
        if not content.strip():
            return {}
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError(f"Store {self._path} does not contain a JSON object")
        return data

    def _dump(self, data: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._path)
        except Exception:
            logger.error(f"Failed to write store {self._path}")
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
