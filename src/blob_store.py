"""
Write-once blob storage on the local filesystem.

Documents and OCR output fragments are stored under slash-separated object
paths relative to a root directory. Custom metadata lives in a sidecar tree
(`.meta/`) so prefix listings only ever return real objects.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

_META_DIR = ".meta"


class LocalBlobStore:
    """Filesystem-backed blob store keyed by object path."""

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _full_path(self, object_path: str) -> Path:
        clean = str(object_path).lstrip("/")
        if not clean or ".." in Path(clean).parts:
            raise ValueError(f"Invalid object path: {object_path!r}")
        return self.root / clean

    def _meta_path(self, object_path: str) -> Path:
        return self.root / _META_DIR / (str(object_path).lstrip("/") + ".json")

    def uri_for(self, object_path: str) -> str:
        return self._full_path(object_path).as_uri()

    def exists(self, object_path: str) -> bool:
        return self._full_path(object_path).is_file()

    def write_once(self, object_path: str, data: bytes, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """
        Store `data` at `object_path` unless an object already exists there.

        Returns:
            bool: True if written, False if the path was already taken
        """
        target = self._full_path(object_path)
        if target.exists():
            logger.debug(f"[blob] {object_path} already exists, skipping write")
            return False

        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, target)

        if metadata:
            meta_path = self._meta_path(object_path)
            meta_path.parent.mkdir(parents=True, exist_ok=True)
            meta_path.write_text(json.dumps(metadata, ensure_ascii=False), encoding="utf-8")

        logger.debug(f"[blob] wrote {object_path} ({len(data)} bytes)")
        return True

    def read(self, object_path: str) -> bytes:
        return self._full_path(object_path).read_bytes()

    def read_metadata(self, object_path: str) -> Dict[str, Any]:
        meta_path = self._meta_path(object_path)
        if not meta_path.is_file():
            return {}
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"[blob] unreadable metadata for {object_path}: {e}")
            return {}

    def list_prefix(self, prefix: str, max_results: Optional[int] = None) -> List[str]:
        """Object paths starting with `prefix`, sorted by name."""
        prefix = str(prefix).lstrip("/")
        # Walk only the deepest directory fully named by the prefix.
        base_dir = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        start = self.root / base_dir if base_dir else self.root
        if not start.is_dir():
            return []

        found = []
        for path in start.rglob("*"):
            if not path.is_file() or path.name.endswith(".tmp"):
                continue
            rel = path.relative_to(self.root).as_posix()
            if rel.startswith(_META_DIR + "/") or not rel.startswith(prefix):
                continue
            found.append(rel)

        found.sort()
        return found[:max_results] if max_results else found

    def exists_prefix(self, prefix: str) -> bool:
        return bool(self.list_prefix(prefix, max_results=1))
