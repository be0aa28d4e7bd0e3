from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Protocol

from caraml_playground.core.path_safety import resolve_under_root

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
_META_SUFFIX = ".meta.json"
_CHUNK_BYTES = 64 * 1024


@dataclass(frozen=True)
class ArtifactBlob:
    name: str
    content_type: str
    size: int
    path: Path

    def iter_chunks(self, chunk_bytes: int = _CHUNK_BYTES) -> Iterator[bytes]:
        with self.path.open("rb") as handle:
            while True:
                chunk = handle.read(chunk_bytes)
                if not chunk:
                    return
                yield chunk

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


class ArtifactStore(Protocol):
    def put(self, name: str, data: bytes, content_type: str) -> str: ...

    def get(self, name: str) -> ArtifactBlob | None: ...


class LocalArtifactStore:
    """Filesystem blob store. Each blob ``<name>`` gets a ``<name>.meta.json``
    sidecar recording its content type."""

    def __init__(self, root: Path):
        self._root = root.resolve(strict=False)

    @property
    def root(self) -> Path:
        return self._root

    def put(self, name: str, data: bytes, content_type: str) -> str:
        target = resolve_under_root(self._root, name)
        target.parent.mkdir(parents=True, exist_ok=True)

        partial = target.with_name(f".{target.name}.partial")
        partial.write_bytes(data)
        os.replace(partial, target)

        meta_path = target.with_name(target.name + _META_SUFFIX)
        meta_path.write_text(json.dumps({"content_type": content_type, "size": len(data)}), encoding="utf-8")
        logger.debug("Stored artifact %s (%d bytes, %s)", name, len(data), content_type)
        return name

    def get(self, name: str) -> ArtifactBlob | None:
        target = resolve_under_root(self._root, name)
        if not target.is_file():
            return None

        content_type = DEFAULT_CONTENT_TYPE
        meta_path = target.with_name(target.name + _META_SUFFIX)
        if meta_path.is_file():
            content_type = json.loads(meta_path.read_text(encoding="utf-8")).get("content_type", DEFAULT_CONTENT_TYPE)
        return ArtifactBlob(name=name, content_type=content_type, size=target.stat().st_size, path=target)
