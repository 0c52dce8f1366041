"""Shared fixtures for the contract_build test suite."""

from __future__ import annotations

import io
from pathlib import Path
import sys
import textwrap
import time
from typing import Any
import zipfile

from contract_build.models import BuildConfig, ExecutionRequest
import pytest

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_config(tmp_path: Path, **overrides: Any) -> BuildConfig:
    """Build a hermetic BuildConfig rooted under *tmp_path*.

    The repair wrapper, lock file pre-generation and the compilation cache
    are disabled and delays are zeroed so tests never touch a real toolchain.

    Args:
        tmp_path: Pytest temp directory used for the cache root and cargo home.
        **overrides: Field values to override.

    Returns:
        A fully constructed BuildConfig instance.
    """
    defaults: dict[str, Any] = {
        "cache_root": str(tmp_path / "cache"),
        "cargo_home": str(tmp_path / "cargo_home"),
        "vendor_bin_dir": str(tmp_path / "vendor_bin"),
        "build_program": sys.executable,
        "build_args": ("-c", "print('built')"),
        "build_timeout_seconds": 30.0,
        "retry_settle_seconds": 0.0,
        "watcher_startup_seconds": 0.0,
        "kill_grace_seconds": 1.0,
        "use_accelerator": False,
        "use_repair_wrapper": False,
        "pregenerate_lockfile": False,
    }
    defaults.update(overrides)
    return BuildConfig(**defaults)


def make_request(code: str = "print('ok')", **overrides: Any) -> ExecutionRequest:
    """Build an ExecutionRequest running *code* with the current interpreter.

    Args:
        code: Python source passed to ``python -c``.
        **overrides: Field values to override.

    Returns:
        A fully constructed ExecutionRequest instance.
    """
    defaults: dict[str, Any] = {
        "program": sys.executable,
        "args": ("-c", textwrap.dedent(code)),
        "timeout_seconds": 30.0,
    }
    defaults.update(overrides)
    return ExecutionRequest(**defaults)


DEFAULT_PROJECT: dict[str, str] = {
    "Anchor.toml": '[programs.localnet]\ndemo = "Demo111111111111111111111111111111111111111"\n',
    "Cargo.toml": '[workspace]\nmembers = ["programs/*"]\nresolver = "2"\n',
    "programs/demo/Cargo.toml": (
        '[package]\nname = "demo"\nversion = "0.1.0"\nedition = "2021"\n\n'
        '[dependencies]\nanchor-lang = "0.30.1"\n'
    ),
    "programs/demo/src/lib.rs": "use anchor_lang::prelude::*;\n",
}


def make_archive(files: dict[str, str] | None = None) -> bytes:
    """Zip *files* (relative path -> text) into an in-memory archive.

    Args:
        files: Archive contents; defaults to a minimal Anchor workspace.

    Returns:
        The zip archive bytes.
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, content in (files if files is not None else DEFAULT_PROJECT).items():
            archive.writestr(name, content)
    return buffer.getvalue()


FAKE_TOOLCHAIN = '''
import argparse
import json
import os
import pathlib
import sys
import time

parser = argparse.ArgumentParser()
parser.add_argument("--counter", required=True)
parser.add_argument("--mode", default="ok")
parser.add_argument("--program", default="demo")
parser.add_argument("--report", default=None)
args = parser.parse_args()

counter = pathlib.Path(args.counter)
attempt = int(counter.read_text()) + 1 if counter.exists() else 1
counter.write_text(str(attempt))

if args.report:
    cwd = pathlib.Path.cwd()
    member = cwd / "programs" / "demo" / "Cargo.toml"
    pathlib.Path(args.report).write_text(json.dumps({
        "cwd": str(cwd),
        "lockfile": (cwd / "Cargo.lock").exists(),
        "lockfile_text": (cwd / "Cargo.lock").read_text() if (cwd / "Cargo.lock").exists() else None,
        "cargo_config": (cwd / ".cargo" / "config.toml").exists(),
        "toolchain_file": (cwd / "rust-toolchain.toml").read_text() if (cwd / "rust-toolchain.toml").exists() else None,
        "member_manifest": member.read_text() if member.exists() else None,
        "env": {key: os.environ.get(key) for key in ("CARGO_HOME", "RUSTUP_TOOLCHAIN", "CARGO_INCREMENTAL", "RUSTC_WRAPPER")},
    }))


def produce():
    deploy = pathlib.Path("target") / "deploy"
    deploy.mkdir(parents=True, exist_ok=True)
    (deploy / f"{args.program}.so").write_bytes(b"\\x7fELF" + args.program.encode())
    idl = pathlib.Path("target") / "idl"
    idl.mkdir(parents=True, exist_ok=True)
    (idl / f"{args.program}.json").write_text(json.dumps({"name": args.program, "instructions": []}))


mode = args.mode
if mode == "ok":
    produce()
    print("Finished release [optimized] target(s)")
    sys.exit(0)
if mode == "defect-then-ok":
    if attempt == 1:
        pathlib.Path("Cargo.lock").write_text("\\n".join([
            "version = 4",
            "",
            "[[package]]",
            'name = "constant_time_eq"',
            'version = "0.4.2"',
            'source = "registry+https://github.com/rust-lang/crates.io-index"',
            'checksum = "cccc"',
            "",
        ]))
        print("error: failed to parse lock file at: Cargo.lock", file=sys.stderr)
        print("lock file version 4 requires `-Znext-lockfile-bump`", file=sys.stderr)
        sys.exit(101)
    produce()
    sys.exit(0)
if mode == "defect":
    print("error: package `constant_time_eq v0.4.2` cannot be built", file=sys.stderr)
    sys.exit(101)
if mode == "fail":
    print("error[E0425]: cannot find value `x` in this scope", file=sys.stderr)
    sys.exit(1)
if mode == "noisy-fail":
    print("e" * 5000, file=sys.stderr)
    sys.exit(1)
if mode == "no-artifact":
    sys.exit(0)
if mode == "sleep":
    time.sleep(60)
sys.exit(2)
'''


def write_fake_toolchain(directory: Path) -> Path:
    """Write the fake build tool script into *directory* and return its path."""
    script = directory / "fake_toolchain.py"
    script.write_text(FAKE_TOOLCHAIN, encoding="utf-8")
    return script


def fake_build_args(script: Path, counter: Path, mode: str = "ok", report: Path | None = None) -> tuple[str, ...]:
    """Arguments making ``python`` run the fake build tool in *mode*."""
    build_args = [str(script), "--counter", str(counter), "--mode", mode]
    if report is not None:
        build_args += ["--report", str(report)]
    return tuple(build_args)


def pid_alive(pid: int) -> bool:
    """Whether *pid* is a live (non-zombie) process, via ``/proc``."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except (FileNotFoundError, ProcessLookupError):
        return False
    state = stat.rsplit(")", 1)[-1].split()[0]
    return state not in ("Z", "X")


def wait_until_dead(pid: int, timeout: float = 5.0) -> bool:
    """Poll until *pid* is gone or a zombie; ``True`` if it died in time."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return not pid_alive(pid)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_toolchain(tmp_path: Path) -> Path:
    """Path of the fake build tool script, written outside any staging dir."""
    tools = tmp_path / "tools"
    tools.mkdir()
    return write_fake_toolchain(tools)


@pytest.fixture()
def counter_file(tmp_path: Path) -> Path:
    """File the fake build tool uses to count its invocations."""
    return tmp_path / "invocations.txt"


@pytest.fixture()
def default_archive() -> bytes:
    """A minimal Anchor workspace archive."""
    return make_archive()
