"""Persistent artifact cache keyed by toolchain/target identity.

Layout under the cache root::

    artifacts/<key>/          cached build output tree
    artifacts/.<key>.lock     advisory lock file

Writers copy the new tree next to the entry and swap it in with renames
while holding the per-key lock, so readers never observe a half-written
tree. The lock is an ``asyncio.Lock`` within the process plus an ``fcntl``
lock on the lock file across processes.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import logging
from pathlib import Path
import re
import shutil
from typing import TYPE_CHECKING
import uuid

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

ARTIFACTS_DIR = "artifacts"


def _safe_key(key: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", key).strip(".")
    if not safe:
        msg = f"invalid cache key: {key!r}"
        raise ValueError(msg)
    return safe


class ArtifactCache:
    """Directory-tree cache shared by every job of the service."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._locks: dict[str, asyncio.Lock] = {}

    def entry_path(self, key: str) -> Path:
        """Directory holding the cached tree for *key*."""
        return self.root / ARTIFACTS_DIR / _safe_key(key)

    def exists(self, key: str) -> bool:
        return self.entry_path(key).is_dir()

    @contextlib.asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        """Hold the in-process and cross-process lock for *key*."""
        safe = _safe_key(key)
        local = self._locks.setdefault(safe, asyncio.Lock())
        async with local:
            lock_dir = self.root / ARTIFACTS_DIR
            lock_dir.mkdir(parents=True, exist_ok=True)
            with open(lock_dir / f".{safe}.lock", "a+b") as handle:
                await asyncio.to_thread(fcntl.flock, handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    async def warm(self, key: str, dest: str | Path) -> bool:
        """Copy the cached tree for *key* into *dest*.

        Failures are logged and reported as a miss.

        Returns:
            ``True`` on a cache hit.
        """
        source = self.entry_path(key)
        try:
            async with self.lock(key):
                if not source.is_dir():
                    logger.info("Artifact cache miss for %s", key)
                    return False
                await asyncio.to_thread(shutil.copytree, source, Path(dest), symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as exc:
            logger.warning("Could not warm %s from artifact cache: %s", dest, exc)
            return False
        logger.info("Artifact cache hit for %s", key)
        return True

    async def store(self, key: str, source: str | Path) -> bool:
        """Replace the cached tree for *key* with a copy of *source*.

        Returns:
            ``True`` if the entry was replaced.
        """
        source = Path(source)
        if not source.is_dir():
            logger.info("Nothing to cache: %s does not exist", source)
            return False

        entry = self.entry_path(key)
        token = uuid.uuid4().hex
        staged = entry.with_name(f".{entry.name}.tmp-{token}")
        retired = entry.with_name(f".{entry.name}.old-{token}")
        try:
            entry.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copytree, source, staged, symlinks=True)
            async with self.lock(key):
                if entry.exists():
                    entry.rename(retired)
                staged.rename(entry)
        except (OSError, shutil.Error) as exc:
            logger.warning("Could not update artifact cache for %s: %s", key, exc)
            if retired.exists() and not entry.exists():
                with contextlib.suppress(OSError):
                    retired.rename(entry)
            await asyncio.to_thread(shutil.rmtree, staged, ignore_errors=True)
            return False
        finally:
            if retired.exists():
                await asyncio.to_thread(shutil.rmtree, retired, ignore_errors=True)
        logger.info("Cached build output for %s", key)
        return True

    async def clear(self, key: str) -> None:
        """Remove the cached tree for *key*."""
        async with self.lock(key):
            await asyncio.to_thread(shutil.rmtree, self.entry_path(key), ignore_errors=True)
