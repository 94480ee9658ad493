"""
Blob stores - content addressed storage for encoded thumbnail bytes.
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator, Optional
from uuid import uuid4

from .attr_store import identity_hash
from .variant_key import sanitize_key


class BlobStore(ABC):
    """Interface for thumbnail blob backends."""

    chunk_size = 64 * 1024

    def path_for(self, identity: str, key: str) -> str:
        """
        Deterministic blob name for a source identity and variant key.

        The identity is hashed so names stay bounded in length and never
        collide across unrelated sources.
        """
        return f"{identity_hash(identity)}-{sanitize_key(key)}.thumb"

    @abstractmethod
    def exists(self, location: str) -> bool:
        """Check if a blob exists."""

    @abstractmethod
    def read(self, location: str) -> Iterator[bytes]:
        """Stream a blob in chunks."""

    @abstractmethod
    def write(self, location: str, data: bytes, source_mtime: Optional[float] = None) -> bool:
        """Write a blob. Returns False on failure."""


class LocalBlobStore(BlobStore):
    """
    Blob store keeping one file per rendition in a cache directory.

    After a write the file's mtime is set to the source mtime, so each
    blob shows which source version it renders.
    """

    def __init__(self, cache_dir: str, logger: Optional[logging.Logger] = None):
        self.cache_dir = Path(cache_dir).expanduser()
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)

    def full_path(self, location: str) -> Path:
        return self.cache_dir / location

    def exists(self, location: str) -> bool:
        return self.full_path(location).is_file()

    def read(self, location: str) -> Iterator[bytes]:
        f = open(self.full_path(location), 'rb')
        return self._stream(f)

    def _stream(self, f) -> Iterator[bytes]:
        try:
            for chunk in iter(lambda: f.read(self.chunk_size), b''):
                yield chunk
        finally:
            f.close()

    def write(self, location: str, data: bytes, source_mtime: Optional[float] = None) -> bool:
        path = self.full_path(location)
        tmp_path = path.with_name(f".{path.stem}.tmp.{uuid4()}")
        try:
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        except OSError as e:
            self.logger.debug(f"thumbnails: failed to write file cache {path}: {e}")
            if tmp_path.exists():
                tmp_path.unlink()
            return False

        if source_mtime is not None:
            try:
                os.utime(path, (source_mtime, source_mtime))
            except OSError as e:
                self.logger.debug(f"thumbnails: could not set mtime on {path}: {e}")
        return True
