"""
Per-file attribute persistence.

An attribute store keeps small JSON-serializable values per source asset
identity, under a named attribute. The record store keeps its thumbnail
record under one fixed attribute name.
"""

import hashlib
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from uuid import uuid4


def identity_hash(identity: str) -> str:
    """SHA-256 hex digest of a source identity."""
    return hashlib.sha256(identity.encode('utf-8')).hexdigest()


class AttrStore(ABC):
    """Interface for per-file attribute backends."""

    @abstractmethod
    def load_attr(self, identity: str, name: str) -> Optional[dict]:
        """Return the stored value, or None if absent."""

    @abstractmethod
    def store_attr(self, identity: str, name: str, value: dict) -> None:
        """Persist a value, replacing any previous one."""


class LocalAttrStore(AttrStore):
    """
    Attribute store keeping one JSON document per identity on disk.

    Documents live at <root>/<h[0:2]>/<h[2:4]>/<h>.json where h is the
    SHA-256 of the identity, and map attribute names to values.
    """

    def __init__(self, root_path: str, logger: Optional[logging.Logger] = None):
        self.root = Path(root_path).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)

    def document_path(self, identity: str) -> Path:
        digest = identity_hash(identity)
        return self.root / digest[0:2] / digest[2:4] / f"{digest}.json"

    def _read_document(self, path: Path) -> dict:
        if not path.exists():
            return {}
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    def load_attr(self, identity: str, name: str) -> Optional[dict]:
        return self._read_document(self.document_path(identity)).get(name)

    def store_attr(self, identity: str, name: str, value: dict) -> None:
        path = self.document_path(identity)
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            document = self._read_document(path)
        except ValueError:
            self.logger.warning(f"Replacing unreadable attribute document {path}")
            document = {}
        document['identity'] = identity
        document[name] = value

        # temp file + rename keeps readers from seeing partial documents
        tmp_path = path.with_name(f".{path.stem}.tmp.{uuid4()}")
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(document, f)
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
