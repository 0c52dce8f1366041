"""Long-running auxiliary daemons (local chain simulators).

A ``DaemonRegistry`` tracks at most one process per ``DaemonKind``. Output
is streamed line by line to callbacks while the daemon runs instead of
being buffered until exit; by default stdout lines are logged at INFO and
stderr lines at ERROR.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
import logging
from typing import TYPE_CHECKING, cast

from contract_build.execution import (
    DEFAULT_KILL_GRACE_SECONDS,
    START_FAILURE_MESSAGE,
    build_process_env,
    kill_process_tree,
)
from contract_build.models import (
    DaemonKind,
    DaemonStatus,
    ExecutionRequest,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_VALIDATOR_RPC_PORT = 8899
DEFAULT_GANACHE_PORT = 8545


class DaemonError(RuntimeError):
    """Base class for daemon lifecycle failures."""


class DaemonAlreadyRunningError(DaemonError):
    """A daemon of the requested kind is already tracked and alive."""


class DaemonStartError(DaemonError):
    """The daemon executable could not be spawned."""


@dataclass
class DaemonHandle:
    """A running daemon and the tasks pumping its output streams."""

    kind: DaemonKind
    process: asyncio.subprocess.Process
    started_at: datetime
    pumps: list[asyncio.Task[None]] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None


def local_validator_request(
    port: int = DEFAULT_VALIDATOR_RPC_PORT,
    working_dir: str | None = None,
) -> ExecutionRequest:
    """Request for ``solana-test-validator``; ``--rpc-port`` only when non-default."""
    args: tuple[str, ...] = ()
    if 0 < port <= 65535 and port != DEFAULT_VALIDATOR_RPC_PORT:
        args = ("--rpc-port", str(port))
    return ExecutionRequest(
        program=DaemonKind.LOCAL_VALIDATOR.value,
        args=args,
        working_dir=working_dir,
        inherit_env=True,
    )


def ganache_request(
    port: int = DEFAULT_GANACHE_PORT,
    working_dir: str | None = None,
) -> ExecutionRequest:
    """Request for a deterministic ``ganache`` instance."""
    args: tuple[str, ...] = ("--deterministic",)
    if 0 < port <= 65535 and port != DEFAULT_GANACHE_PORT:
        args = (*args, "--port", str(port))
    return ExecutionRequest(
        program=DaemonKind.GANACHE.value,
        args=args,
        working_dir=working_dir,
        inherit_env=True,
    )


def _log_stdout(kind: DaemonKind) -> Callable[[str], None]:
    def _callback(line: str) -> None:
        logger.info("[%s STDOUT] %s", kind, line)

    return _callback


def _log_stderr(kind: DaemonKind) -> Callable[[str], None]:
    def _callback(line: str) -> None:
        logger.error("[%s STDERR] %s", kind, line)

    return _callback


async def _pump_lines(
    stream: asyncio.StreamReader,
    callback: Callable[[str], None],
) -> None:
    """Forward each non-empty line of *stream* to *callback* until EOF."""
    while True:
        raw = await stream.readline()
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            continue
        try:
            callback(line)
        except Exception:
            logger.exception("Daemon output callback failed")


class DaemonRegistry:
    """Single-instance registry of daemons keyed by kind."""

    def __init__(self, kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS) -> None:
        self._handles: dict[DaemonKind, DaemonHandle] = {}
        self._lock = asyncio.Lock()
        self._kill_grace_seconds = kill_grace_seconds

    def get(self, kind: DaemonKind) -> DaemonHandle | None:
        """Return the tracked handle for *kind*, if any."""
        return self._handles.get(kind)

    def status(self) -> list[DaemonStatus]:
        """Snapshot of every tracked daemon."""
        return [
            DaemonStatus(
                kind=handle.kind,
                pid=handle.pid,
                started_at=handle.started_at,
                running=handle.running,
            )
            for handle in self._handles.values()
        ]

    async def start(
        self,
        kind: DaemonKind,
        request: ExecutionRequest,
        *,
        on_stdout: Callable[[str], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
    ) -> DaemonHandle:
        """Start a daemon and begin streaming its output.

        Args:
            kind: Daemon kind; at most one live instance per kind.
            request: Program, arguments, working directory and environment.
                ``timeout_seconds`` and ``token`` are not used.
            on_stdout: Called with each stdout line (default: INFO log).
            on_stderr: Called with each stderr line (default: ERROR log).

        Returns:
            The tracked handle.

        Raises:
            DaemonAlreadyRunningError: If a live daemon of *kind* is tracked.
            DaemonStartError: If the executable cannot be spawned.
        """
        async with self._lock:
            existing = self._handles.get(kind)
            if existing is not None:
                if existing.running:
                    msg = f"{kind} is already running (pid {existing.pid})"
                    raise DaemonAlreadyRunningError(msg)
                logger.info("Replacing exited %s handle (pid %d)", kind, existing.pid)
                await self._release(existing)
                del self._handles[kind]

            started_at = datetime.now(UTC)
            try:
                proc = await asyncio.create_subprocess_exec(
                    request.program,
                    *request.args,
                    cwd=request.working_dir,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=build_process_env(request.env, inherit=request.inherit_env),
                    start_new_session=True,
                )
            except OSError as exc:
                msg = f"{START_FAILURE_MESSAGE}{request.program}: {exc}"
                raise DaemonStartError(msg) from exc

            handle = DaemonHandle(kind=kind, process=proc, started_at=started_at)
            # Both streams are PIPE, so the readers are always present.
            stdout = cast("asyncio.StreamReader", proc.stdout)
            stderr = cast("asyncio.StreamReader", proc.stderr)
            handle.pumps = [
                asyncio.create_task(_pump_lines(stdout, on_stdout or _log_stdout(kind))),
                asyncio.create_task(_pump_lines(stderr, on_stderr or _log_stderr(kind))),
            ]
            self._handles[kind] = handle
            logger.info("%s started (pid %d)", kind, proc.pid)
            return handle

    async def stop(self, kind: DaemonKind) -> bool:
        """Kill the tracked daemon's process tree and clear its handle.

        Returns:
            ``True`` if a live process was stopped.
        """
        async with self._lock:
            handle = self._handles.pop(kind, None)
            if handle is None:
                return False
            was_running = handle.running
            try:
                if was_running:
                    await kill_process_tree(handle.process, self._kill_grace_seconds)
                    logger.info("%s stopped (pid %d)", kind, handle.pid)
            except Exception:
                logger.exception("Failed to stop %s", kind)
            finally:
                await self._release(handle)
            return was_running

    async def stop_all(self) -> None:
        """Stop every tracked daemon."""
        for kind in list(self._handles):
            await self.stop(kind)

    async def _release(self, handle: DaemonHandle) -> None:
        for pump in handle.pumps:
            if not pump.done():
                pump.cancel()
        for pump in handle.pumps:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await pump
