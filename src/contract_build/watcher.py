"""Background watcher re-patching crates as the toolchain downloads them."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from contract_build.patching import patch_registry_manifests

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import TracebackType

    from contract_build.models import PatchPolicy

logger = logging.getLogger(__name__)


class ManifestWatcher:
    """Poll registry directories and apply the manifest rules to new crates.

    Used as an async context manager around a build invocation::

        async with ManifestWatcher(dirs, policy, poll_seconds=0.01):
            result = await run_build_tool(...)

    The polling task is cancelled and awaited on exit, whatever the outcome
    of the body. Errors inside a poll are logged and polling continues.
    """

    def __init__(
        self,
        registry_dirs: Sequence[str | Path],
        policy: PatchPolicy,
        *,
        poll_seconds: float = 0.01,
        startup_seconds: float = 0.0,
    ) -> None:
        self.registry_dirs = [Path(d) for d in registry_dirs]
        self.policy = policy
        self.poll_seconds = poll_seconds
        self.startup_seconds = startup_seconds
        self.patched: list[Path] = []
        self.polls = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start polling; waits ``startup_seconds`` so the first pass can run."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="manifest-watcher")
        if self.startup_seconds > 0:
            await asyncio.sleep(self.startup_seconds)

    async def stop(self) -> None:
        """Cancel the polling task and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Manifest watcher stopped after %d polls", self.polls)

    def poll_once(self) -> list[Path]:
        """Run one patch pass over every registry directory."""
        patched: list[Path] = []
        for registry in self.registry_dirs:
            patched.extend(patch_registry_manifests(registry, self.policy))
        self.polls += 1
        if patched:
            self.patched.extend(patched)
            logger.info("Watcher patched %d downloaded manifest(s)", len(patched))
        return patched

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.poll_once)
            except Exception:
                logger.exception("Manifest watcher poll failed")
            await asyncio.sleep(self.poll_seconds)

    async def __aenter__(self) -> ManifestWatcher:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
