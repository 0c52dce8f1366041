"""Process execution engine: supervised external program invocation.

Runs an arbitrary external program as an async subprocess in its own
process group, drains stdout and stderr concurrently with the exit wait,
and races all of it against an effective cancellation composed of the
caller's token and a timeout. On timeout or cancellation the whole process
group is terminated (SIGTERM, then SIGKILL after a grace period).

Faults never escape: spawn errors, timeouts, cancellations and unexpected
exceptions are all reported as a failed ``ExecutionResult``.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
import logging
import os
import signal
import time
from typing import TYPE_CHECKING

from contract_build.models import ExecutionRequest, ExecutionResult, ExecutionStatus

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

DEFAULT_KILL_GRACE_SECONDS = 5.0

# Variables carried over from the service environment when a request does
# not inherit the full environment. PATH is never among them.
_PASSTHROUGH_VARS: tuple[str, ...] = (
    "HOME",
    "USER",
    "LOGNAME",
    "LANG",
    "LC_ALL",
    "TMPDIR",
    "TERM",
    "SSL_CERT_FILE",
    "SSL_CERT_DIR",
)

TIMEOUT_MESSAGE = "The operation was canceled: timeout of {timeout:g}s exceeded"
CANCELLED_MESSAGE = "The operation was canceled by the caller"
START_FAILURE_MESSAGE = "Failed to start process: "


def build_process_env(
    overrides: Mapping[str, str] | None = None,
    *,
    inherit: bool = False,
) -> dict[str, str]:
    """Compose the environment for a child process.

    Without *inherit* only a small passthrough set (``HOME``, ``LANG``,
    ``TMPDIR`` ...) is copied from the service environment and ``PATH``
    falls back to ``os.defpath``; callers wanting a specific ``PATH`` put
    it in *overrides*.

    Args:
        overrides: Variables to set on top of the base environment.
        inherit: Start from a full copy of ``os.environ``.

    Returns:
        A new dict suitable for the ``env`` argument of a subprocess call.
    """
    if inherit:
        env = dict(os.environ)
    else:
        env = {key: os.environ[key] for key in _PASSTHROUGH_VARS if key in os.environ}
        env["PATH"] = os.defpath
    if overrides:
        env.update(overrides)
    return env


async def kill_process_tree(
    proc: asyncio.subprocess.Process,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> None:
    """Send SIGTERM to the process group, escalating to SIGKILL after a grace period.

    The child is started with ``start_new_session=True``, so its pid is also
    its process group id and descendants that stayed in the group are
    signalled even if the leader already exited. Failures are logged and
    swallowed.

    Args:
        proc: The asyncio subprocess to kill.
        grace_seconds: Seconds to wait after SIGTERM before SIGKILL.
    """
    pgid = proc.pid
    try:
        os.killpg(pgid, signal.SIGTERM)
    except ProcessLookupError:
        return
    except OSError as exc:
        logger.warning("Could not terminate process group %d: %s", pgid, exc)
        return

    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
    except TimeoutError:
        logger.warning(
            "Process group %d ignored SIGTERM for %.1fs; sending SIGKILL",
            pgid,
            grace_seconds,
        )
        with contextlib.suppress(OSError):
            os.killpg(pgid, signal.SIGKILL)
        await proc.wait()

    # Descendants outlive the leader when they ignore SIGTERM.
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as exc:
        logger.warning("Could not kill process group %d: %s", pgid, exc)


async def run_process(
    request: ExecutionRequest,
    *,
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> ExecutionResult:
    """Run an external program and capture its output.

    The effective cancellation fires at ``min(request.token, timeout)``.
    A timeout yields ``ExecutionStatus.TIMED_OUT`` with the configured
    timeout as duration; the caller's token yields
    ``ExecutionStatus.CANCELLED`` with the elapsed time. Both terminate the
    process group and return exit code -1 with no captured output.

    If the awaiting task is itself cancelled, the process group is killed
    before ``CancelledError`` propagates.

    Args:
        request: What to run and how.
        kill_grace_seconds: SIGTERM to SIGKILL escalation delay.

    Returns:
        An ``ExecutionResult``; never raises for process faults.
    """
    started_at = datetime.now(UTC)
    token = request.token

    if token is not None and token.is_cancelled:
        logger.info("Not starting %s: already cancelled", request.program)
        return ExecutionResult.failure(
            CANCELLED_MESSAGE,
            status=ExecutionStatus.CANCELLED,
            started_at=started_at,
        )

    env = build_process_env(request.env, inherit=request.inherit_env)
    logger.info("Starting %s (cwd=%s)", request.describe(), request.working_dir)
    start = time.monotonic()

    try:
        proc = await asyncio.create_subprocess_exec(
            request.program,
            *request.args,
            cwd=request.working_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            start_new_session=True,  # own process group for killpg
        )
    except OSError as exc:
        message = f"{START_FAILURE_MESSAGE}{request.program}: {exc}"
        logger.warning("%s", message)
        return ExecutionResult.failure(
            message,
            status=ExecutionStatus.START_FAILED,
            started_at=started_at,
        )
    except Exception as exc:
        logger.warning("Unexpected error starting %s: %s", request.program, exc)
        return ExecutionResult.failure(
            str(exc) or type(exc).__name__,
            status=ExecutionStatus.ERROR,
            started_at=started_at,
        )

    communicate_task = asyncio.ensure_future(proc.communicate())
    cancel_task = asyncio.ensure_future(token.wait()) if token is not None else None
    waiters: set[asyncio.Future[object]] = {communicate_task}
    if cancel_task is not None:
        waiters.add(cancel_task)

    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=request.timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if communicate_task in done:
            stdout_bytes, stderr_bytes = communicate_task.result()
            duration = time.monotonic() - start
            exit_code = proc.returncode if proc.returncode is not None else -1
            # Decode as UTF-8 with replacement for non-UTF-8 bytes
            result = ExecutionResult(
                exit_code=exit_code,
                stdout=stdout_bytes.decode("utf-8", errors="replace"),
                stderr=stderr_bytes.decode("utf-8", errors="replace"),
                success=exit_code == 0,
                duration_seconds=duration,
                pid=proc.pid,
                started_at=started_at,
                status=ExecutionStatus.COMPLETED,
            )
            log = logger.info if result.success else logger.warning
            log(
                "%s exited with code %d after %.2fs",
                request.program,
                exit_code,
                duration,
            )
            return result

        cancelled = cancel_task is not None and cancel_task in done
        await kill_process_tree(proc, kill_grace_seconds)
        # A descendant that left the group can keep the pipes open.
        with contextlib.suppress(Exception):
            await asyncio.wait_for(communicate_task, timeout=kill_grace_seconds)

        if cancelled:
            duration = time.monotonic() - start
            logger.warning(
                "%s cancelled by caller after %.2fs; process tree killed",
                request.program,
                duration,
            )
            return ExecutionResult.failure(
                CANCELLED_MESSAGE,
                status=ExecutionStatus.CANCELLED,
                duration_seconds=duration,
                pid=proc.pid,
                started_at=started_at,
            )

        logger.warning(
            "%s timed out after %gs; process tree killed",
            request.program,
            request.timeout_seconds,
        )
        return ExecutionResult.failure(
            TIMEOUT_MESSAGE.format(timeout=request.timeout_seconds),
            status=ExecutionStatus.TIMED_OUT,
            duration_seconds=request.timeout_seconds,
            pid=proc.pid,
            started_at=started_at,
        )
    except asyncio.CancelledError:
        await asyncio.shield(kill_process_tree(proc, kill_grace_seconds))
        raise
    except Exception as exc:
        logger.warning("Error while supervising %s: %s", request.program, exc)
        if proc.returncode is None:
            await kill_process_tree(proc, kill_grace_seconds)
        return ExecutionResult.failure(
            str(exc) or type(exc).__name__,
            status=ExecutionStatus.ERROR,
            pid=proc.pid,
            started_at=started_at,
        )
    finally:
        if cancel_task is not None and not cancel_task.done():
            cancel_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cancel_task
        if not communicate_task.done():
            communicate_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await communicate_task


def run_process_sync(
    request: ExecutionRequest,
    *,
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> ExecutionResult:
    """Blocking wrapper for :func:`run_process` with identical semantics.

    Must not be called from inside a running event loop.
    """
    return asyncio.run(run_process(request, kill_grace_seconds=kill_grace_seconds))
