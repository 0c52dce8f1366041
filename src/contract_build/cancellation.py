"""Cancellation token shared by a compile job and every process it spawns.

A token is signalled once, from any thread, and can be awaited from any
event loop. The blocking and awaitable execution paths both observe it.
"""

from __future__ import annotations

import asyncio
import threading


class CancellationToken:
    """One-shot, thread-safe cancellation signal.

    ``cancel()`` may be called from any thread; coroutines awaiting
    ``wait()`` on any event loop are woken through
    ``loop.call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future[None]]] = []

    @property
    def is_cancelled(self) -> bool:
        """Whether ``cancel()`` has been called."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation. Idempotent."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            waiters = list(self._waiters)
            self._waiters.clear()
        for loop, future in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve, future)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        with self._lock:
            if self._event.is_set():
                return
            self._waiters.append((loop, future))
        try:
            await future
        finally:
            with self._lock:
                if (loop, future) in self._waiters:
                    self._waiters.remove((loop, future))

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)
