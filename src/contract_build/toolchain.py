"""Toolchain helpers layered on the process execution engine.

Convenience runners for the build tools, composition of the isolated
per-job toolchain environment, compilation-cache discovery and the
generated ``cargo`` repair wrapper.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import shlex
import shutil
import stat
import sys
from typing import TYPE_CHECKING

from contract_build.execution import run_process
from contract_build.models import ExecutionRequest, ExecutionResult, ExecutionStatus

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from contract_build.cancellation import CancellationToken
    from contract_build.models import BuildConfig

logger = logging.getLogger(__name__)

ISOLATED_CARGO_HOME_DIR = ".cargo_home"
WRAPPER_DIR = ".cargo_wrapper"
ACCELERATOR_NAME = "sccache"

_VENDOR_BIN_DIR = Path(".local") / "share" / "solana" / "install" / "active_release" / "bin"
_ACCELERATOR_LOCATIONS: tuple[Path, ...] = (
    Path("/usr/local/bin"),
    Path.home() / ".cargo" / "bin",
)


# ---------------------------------------------------------------------------
# Command runners
# ---------------------------------------------------------------------------


async def run_command(
    program: str,
    args: Sequence[str] = (),
    *,
    working_dir: str | Path | None = None,
    timeout: float = 900.0,
    token: CancellationToken | None = None,
    env: Mapping[str, str] | None = None,
    inherit_env: bool = False,
    kill_grace_seconds: float = 5.0,
) -> ExecutionResult:
    """Run *program* with *args* through the execution engine.

    A working directory that does not exist is reported as a
    ``start_failed`` result without spawning anything.
    """
    if working_dir is not None and not Path(working_dir).is_dir():
        message = f"Working directory does not exist: {working_dir}"
        logger.warning("%s", message)
        return ExecutionResult.failure(message, status=ExecutionStatus.START_FAILED)

    request = ExecutionRequest(
        program=program,
        args=tuple(args),
        working_dir=str(working_dir) if working_dir is not None else None,
        env=dict(env or {}),
        inherit_env=inherit_env,
        timeout_seconds=timeout,
        token=token,
    )
    return await run_process(request, kill_grace_seconds=kill_grace_seconds)


async def run_cargo(
    args: Sequence[str],
    working_dir: str | Path,
    *,
    env: Mapping[str, str] | None = None,
    timeout: float = 600.0,
    token: CancellationToken | None = None,
) -> ExecutionResult:
    """Run ``cargo`` (the one resolved by ``env['CARGO']`` if set)."""
    program = (env or {}).get("CARGO", "cargo")
    return await run_command(
        program,
        args,
        working_dir=working_dir,
        timeout=timeout,
        token=token,
        env=env,
    )


async def run_build_tool(
    config: BuildConfig,
    working_dir: str | Path,
    *,
    env: Mapping[str, str] | None = None,
    token: CancellationToken | None = None,
) -> ExecutionResult:
    """Run the configured build command (``anchor build`` by default)."""
    return await run_command(
        config.build_program,
        config.build_args,
        working_dir=working_dir,
        timeout=config.build_timeout_seconds,
        token=token,
        env=env,
        kill_grace_seconds=config.kill_grace_seconds,
    )


async def probe_tool_version(
    program: str,
    *,
    env: Mapping[str, str] | None = None,
    timeout: float = 30.0,
) -> str | None:
    """Return the first line of ``program --version``, or ``None`` if unavailable."""
    result = await run_command(program, ("--version",), timeout=timeout, env=env)
    if not result.success:
        logger.debug("%s --version failed: %s", program, result.error_summary())
        return None
    lines = result.stdout.strip().splitlines()
    return lines[0] if lines else None


# ---------------------------------------------------------------------------
# Isolated environment
# ---------------------------------------------------------------------------


def global_cargo_home(config: BuildConfig) -> Path:
    """The shared cargo home: config, then ``$CARGO_HOME``, then ``~/.cargo``."""
    if config.cargo_home:
        return Path(config.cargo_home)
    env_home = os.environ.get("CARGO_HOME")
    if env_home:
        return Path(env_home)
    return Path.home() / ".cargo"


def registry_src_dir(cargo_home: Path) -> Path:
    """Directory holding unpacked crates downloaded into *cargo_home*."""
    return cargo_home / "registry" / "src"


def find_accelerator(
    name: str = ACCELERATOR_NAME,
    search_dirs: Iterable[Path] = _ACCELERATOR_LOCATIONS,
) -> str | None:
    """Locate a compilation-cache executable.

    Probes the fixed install locations first, then ``PATH``.

    Returns:
        Absolute path of the executable, or ``None``.
    """
    for directory in search_dirs:
        candidate = Path(directory) / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    return shutil.which(name)


def _dedupe(entries: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for entry in entries:
        if entry and entry not in seen:
            seen.add(entry)
            ordered.append(entry)
    return ordered


def build_isolated_env(staging_dir: str | Path, config: BuildConfig) -> dict[str, str]:
    """Compose the toolchain environment for one job.

    The job gets a private ``CARGO_HOME`` inside its staging directory and
    a ``PATH`` ordered as: repair wrapper dir, stable toolchain bin,
    existing entries, vendor toolchain bin (duplicates dropped).

    Args:
        staging_dir: The job's staging directory.
        config: Service configuration.

    Returns:
        Environment overrides for the build tool.
    """
    staging = Path(staging_dir)
    isolated_home = staging / ISOLATED_CARGO_HOME_DIR
    isolated_home.mkdir(parents=True, exist_ok=True)

    stable_bin = Path(config.stable_bin_dir) if config.stable_bin_dir else global_cargo_home(config) / "bin"
    vendor_bin = Path(config.vendor_bin_dir) if config.vendor_bin_dir else Path.home() / _VENDOR_BIN_DIR
    wrapper_dir = staging / WRAPPER_DIR

    path_entries: list[str] = []
    if config.use_repair_wrapper:
        path_entries.append(str(wrapper_dir))
    path_entries.append(str(stable_bin))
    path_entries.extend(os.environ.get("PATH", os.defpath).split(os.pathsep))
    path_entries.append(str(vendor_bin))

    wrapper_cargo = wrapper_dir / "cargo"
    if config.use_repair_wrapper and wrapper_cargo.is_file():
        cargo = str(wrapper_cargo)
    else:
        cargo = str(stable_bin / "cargo")

    env = {
        "CARGO_HOME": str(isolated_home),
        "RUSTUP_TOOLCHAIN": config.toolchain_channel,
        "CARGO": cargo,
        "PATH": os.pathsep.join(_dedupe(path_entries)),
    }

    accelerator = find_accelerator() if config.use_accelerator else None
    if accelerator:
        env["RUSTC_WRAPPER"] = accelerator
        logger.info("Using compilation cache %s", accelerator)
    else:
        env["CARGO_INCREMENTAL"] = "1"
    return env


# ---------------------------------------------------------------------------
# Repair wrapper
# ---------------------------------------------------------------------------

_WRAPPER_TEMPLATE = """#!/usr/bin/env bash
# Generated for one build job. Patches downloaded crate manifests around cargo.
patch_registries() {{
  {python} -m contract_build.cli patch-registry {dirs}{policy} >/dev/null 2>&1 || true
}}
patch_registries
{cargo} "$@"
status=$?
patch_registries
exit $status
"""


def resolve_real_cargo(config: BuildConfig) -> str | None:
    """Absolute path of the cargo binary the wrapper delegates to."""
    stable_bin = Path(config.stable_bin_dir) if config.stable_bin_dir else global_cargo_home(config) / "bin"
    candidate = stable_bin / "cargo"
    if candidate.is_file():
        return str(candidate)
    return shutil.which("cargo")


def write_repair_wrapper(
    staging_dir: str | Path,
    real_cargo: str,
    registry_dirs: Sequence[Path],
    policy_file: str | None = None,
) -> Path:
    """Write the per-job ``cargo`` wrapper script.

    The wrapper runs the registry manifest patch pass over *registry_dirs*,
    invokes *real_cargo* with the original arguments, patches again and
    exits with cargo's status.

    Returns:
        Path of the executable wrapper.
    """
    wrapper_dir = Path(staging_dir) / WRAPPER_DIR
    wrapper_dir.mkdir(parents=True, exist_ok=True)
    wrapper = wrapper_dir / "cargo"
    script = _WRAPPER_TEMPLATE.format(
        python=shlex.quote(sys.executable),
        dirs=" ".join(shlex.quote(str(d)) for d in registry_dirs),
        policy=f" --policy {shlex.quote(policy_file)}" if policy_file else "",
        cargo=shlex.quote(real_cargo),
    )
    wrapper.write_text(script, encoding="utf-8")
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    logger.info("Wrote cargo repair wrapper %s -> %s", wrapper, real_cargo)
    return wrapper
