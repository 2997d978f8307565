"""
Blob storage abstraction for uploaded source files.
Default implementation uses the local filesystem; the protocol leaves room for
cloud backends.
"""
from __future__ import annotations

import os
from pathlib import Path, PurePosixPath
from typing import Callable, Protocol

from .config import BLOB_CHUNK_SIZE, BLOB_DIR
from .errors import PersistenceError
from .observability import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[int], None]


class BlobStore(Protocol):
    def put(
        self,
        path: str,
        data: bytes,
        content_type: str = "",
        on_progress: ProgressCallback | None = None,
    ) -> str:
        ...

    def url_for(self, path: str) -> str:
        ...

    def delete(self, path: str):
        ...


class LocalBlobStore:
    def __init__(self, root: Path | None = None, chunk_size: int = BLOB_CHUNK_SIZE):
        self._root = Path(root) if root else BLOB_DIR
        self._chunk_size = max(1, int(chunk_size))

    @property
    def root(self) -> Path:
        return self._root

    def ensure_ready(self):
        self._root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        relative = PurePosixPath(str(path or "").strip("/"))
        if not relative.parts or any(part in {"", ".", ".."} for part in relative.parts):
            raise PersistenceError(f"invalid blob path: {path}")
        return self._root.joinpath(*relative.parts)

    def put(
        self,
        path: str,
        data: bytes,
        content_type: str = "",
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """
        Writes `data` in chunks to a temp file, then renames it into place.
        `on_progress` receives non-decreasing integer percentages ending at 100.
        """
        self.ensure_ready()
        destination = self._resolve(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp = destination.with_name(destination.name + ".part")
        payload = bytes(data or b"")
        total = len(payload)
        last = -1
        try:
            with open(tmp, "wb") as fh:
                for offset in range(0, total, self._chunk_size):
                    fh.write(payload[offset : offset + self._chunk_size])
                    written = min(total, offset + self._chunk_size)
                    percent = int(written * 100 / total)
                    if on_progress is not None and percent > last:
                        on_progress(percent)
                        last = percent
            os.replace(tmp, destination)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            logger.error("blob_put_failed", path=path, error=str(exc))
            raise PersistenceError(f"blob upload failed: {path}") from exc
        if on_progress is not None and last < 100:
            on_progress(100)
        logger.info("blob_put", path=path, bytes=total, content_type=content_type)
        return str(path)

    def url_for(self, path: str) -> str:
        destination = self._resolve(path)
        if not destination.exists():
            raise PersistenceError(f"blob not found: {path}")
        return destination.resolve().as_uri()

    def delete(self, path: str):
        destination = self._resolve(path)
        try:
            destination.unlink()
        except FileNotFoundError:
            logger.warning("blob_delete_missing", path=path)
        except OSError as exc:
            raise PersistenceError(f"blob delete failed: {path}") from exc
