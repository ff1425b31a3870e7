from __future__ import annotations

import contextlib
import io
import logging
import os
import posixpath
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Dict, Iterator, List

logger = logging.getLogger(__name__)


class FileSystem(ABC):
    """Byte storage addressed by relative, ``/``-separated paths."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Return True when a file exists at ``path``."""

    @abstractmethod
    def open_read(self, path: str) -> IO[bytes]:
        """Open ``path`` for binary reading. Raises FileNotFoundError."""

    @abstractmethod
    def open_write(self, path: str) -> contextlib.AbstractContextManager:
        """Context manager yielding a binary stream that creates or truncates ``path``.

        The new content becomes visible only when the block exits cleanly.
        """

    @abstractmethod
    def ensure_dir(self, path: str) -> None:
        """Create directory ``path`` and its parents."""

    def read_bytes(self, path: str) -> bytes:
        with self.open_read(path) as stream:
            return stream.read()

    def write_bytes(self, path: str, data: bytes) -> None:
        with self.open_write(path) as stream:
            stream.write(data)


def normalize(path: str) -> str:
    """Normalise a relative storage path; rejects paths escaping the root."""
    cleaned = posixpath.normpath(path.replace("\\", "/")).lstrip("/")
    if cleaned in ("", ".") or cleaned == ".." or cleaned.startswith("../"):
        raise ValueError(f"Invalid storage path: {path!r}")
    return cleaned


class LocalFileSystem(FileSystem):
    """Files under a root directory, written atomically via temp file + replace."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"LocalFileSystem({str(self.root)!r})"

    def resolve(self, path: str) -> Path:
        return self.root / normalize(path)

    def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def open_read(self, path: str) -> IO[bytes]:
        return self.resolve(path).open("rb")

    def ensure_dir(self, path: str) -> None:
        target = self.root if path in ("", ".") else self.resolve(path)
        target.mkdir(parents=True, exist_ok=True)

    @contextlib.contextmanager
    def open_write(self, path: str) -> Iterator[IO[bytes]]:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                yield f
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
            logger.debug("Wrote %s", target)
        finally:
            if os.path.exists(tmp_name):
                try:
                    os.remove(tmp_name)
                except OSError:
                    logger.debug("Could not remove temp file %s", tmp_name, exc_info=True)


class MemoryFileSystem(FileSystem):
    """In-memory storage, for tests and throwaway sessions."""

    def __init__(self) -> None:
        self._files: Dict[str, bytes] = {}
        self._dirs = set()
        self._lock = threading.Lock()
        self.write_log: List[str] = []

    def exists(self, path: str) -> bool:
        with self._lock:
            return normalize(path) in self._files

    def open_read(self, path: str) -> IO[bytes]:
        key = normalize(path)
        with self._lock:
            if key not in self._files:
                raise FileNotFoundError(path)
            return io.BytesIO(self._files[key])

    def ensure_dir(self, path: str) -> None:
        if path in ("", "."):
            return
        with self._lock:
            self._dirs.add(normalize(path))

    @contextlib.contextmanager
    def open_write(self, path: str) -> Iterator[IO[bytes]]:
        key = normalize(path)
        buffer = io.BytesIO()
        yield buffer
        with self._lock:
            self._files[key] = buffer.getvalue()
            self.write_log.append(key)

    def listdir(self) -> List[str]:
        with self._lock:
            return sorted(self._files)
