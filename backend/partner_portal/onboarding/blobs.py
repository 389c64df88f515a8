"""Blob store for files attached to onboarding tasks.

The engine never looks inside a file.  It uploads the bytes, gets back a
`BlobRef`, and only then records the reference in the task document.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from partner_portal.config import settings
from partner_portal.middleware.exceptions import BlobUploadError
from partner_portal.onboarding.validation import sanitize_filename

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlobRef:
    path: str
    size: int
    content_type: str | None

    def as_field_value(self) -> str:
        """What gets stored in the task document."""
        return self.path


class BlobStore(Protocol):
    async def upload(self, path: str, content: bytes, content_type: str | None = None) -> BlobRef: ...


def blob_path(tenant_id: str, task_key: str, field_name: str, filename: str) -> str:
    """`{tenant}/{task}/{field}_{epoch_ms}_{safe_name}` — unique per upload."""
    stamp = int(time.time() * 1000)
    return f"{tenant_id}/{task_key}/{field_name}_{stamp}_{sanitize_filename(filename)}"


class LocalBlobStore:
    """Blobs as files under a root directory."""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.blob_root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _target(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if self._root not in target.parents:
            raise BlobUploadError(f"Refusing to write outside blob root: {path}")
        return target

    async def upload(self, path: str, content: bytes, content_type: str | None = None) -> BlobRef:
        target = self._target(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Write-then-rename so a half-written file is never visible
            tmp = target.with_name(target.name + ".part")
            tmp.write_bytes(content)
            tmp.replace(target)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            logger.error("Blob upload to %s failed: %s", path, e)
            raise BlobUploadError(f"Could not store file: {target.name}") from e

        logger.debug("Stored blob %s (%d bytes)", path, len(content))
        return BlobRef(path=path, size=len(content), content_type=content_type)

    async def read(self, path: str) -> bytes:
        return await asyncio.to_thread(self._target(path).read_bytes)
