"""
Local object store for DOCX bytes.

Keys are relative POSIX paths (``originals/u1/ab12.docx``) resolved under
``STORAGE_DIR``.  A key that would resolve outside the root is rejected.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Optional

import aiofiles
import aiofiles.os

from app.config import settings

logger = logging.getLogger(__name__)


class LocalStorage:
    """Async file-backed key/value store."""

    def __init__(self, root: Optional[str] = None) -> None:
        self.root = Path(root or settings.STORAGE_DIR).resolve()

    def path_for(self, key: str) -> Path:
        """Resolve *key* under the root. Raises ValueError for escaping keys."""
        pure = PurePosixPath(key)
        if not key or pure.is_absolute() or ".." in pure.parts:
            raise ValueError(f"Invalid storage key: {key!r}")
        path = (self.root / Path(*pure.parts)).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Invalid storage key: {key!r}")
        return path

    async def save(self, key: str, data: bytes) -> str:
        path = self.path_for(key)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, "wb") as out:
            await out.write(data)
        logger.info("Stored %s (%s bytes)", key, f"{len(data):,}")
        return key

    async def load(self, key: str) -> bytes:
        """Raises FileNotFoundError for unknown keys."""
        async with aiofiles.open(self.path_for(key), "rb") as src:
            return await src.read()

    async def exists(self, key: str) -> bool:
        return await aiofiles.os.path.exists(self.path_for(key))

    async def delete(self, key: str) -> bool:
        """Delete *key*; logs and returns False instead of raising on failure."""
        try:
            path = self.path_for(key)
            if await aiofiles.os.path.exists(path):
                await aiofiles.os.remove(path)
                return True
        except (OSError, ValueError) as exc:
            logger.warning("Could not remove %r: %s", key, exc)
        return False

    async def check(self) -> bool:
        """True when the root exists (created if missing) and is a directory."""
        try:
            await aiofiles.os.makedirs(self.root, exist_ok=True)
        except OSError as exc:
            logger.error("Storage root %s unavailable: %s", self.root, exc)
            return False
        return await aiofiles.os.path.isdir(self.root)


def get_storage() -> LocalStorage:
    """FastAPI dependency; reads STORAGE_DIR at call time."""
    return LocalStorage(os.fspath(settings.STORAGE_DIR))
