"""CLI entry point for the contract build service.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``contract-build = "contract_build.cli:main"``.

Subcommands:
    compile ARCHIVE         Compile one source archive and print a summary.
    patch-registry DIR...   Apply the registry manifest rules once; the
                            generated cargo repair wrapper calls this.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

from contract_build.config import configure_logging, load_config
from contract_build.models import BuildConfig, CompileResult
from contract_build.patching import default_patch_policy, load_patch_policy, patch_registry_manifests
from contract_build.pipeline import BuildOrchestrator


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ``ArgumentParser`` with ``compile`` and
        ``patch-registry`` subcommands.
    """
    parser = argparse.ArgumentParser(
        prog="contract-build",
        description="Compile smart-contract source archives with a supervised toolchain.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    compile_parser = subparsers.add_parser("compile", help="Compile a zipped source package.")
    compile_parser.add_argument("archive", help="Path to the source zip archive.")
    compile_parser.add_argument(
        "--config",
        default=None,
        help="Path to an optional BuildConfig YAML file.",
    )
    compile_parser.add_argument(
        "--output",
        default=None,
        help="Write the result summary as JSON to this file.",
    )
    compile_parser.add_argument(
        "--artifact-dir",
        default=None,
        help="Write the compiled program binary (and IDL) into this directory.",
    )

    patch_parser = subparsers.add_parser(
        "patch-registry",
        help="Patch known-bad crate manifests in cargo registry src directories.",
    )
    patch_parser.add_argument("dirs", nargs="+", help="Registry src directories.")
    patch_parser.add_argument(
        "--config",
        default=None,
        help="Path to an optional BuildConfig YAML file.",
    )
    patch_parser.add_argument(
        "--policy",
        default=None,
        help="Path to a PatchPolicy YAML file (overrides the config).",
    )
    return parser


def _print_summary(result: CompileResult, config: BuildConfig) -> None:
    """Print a human-readable summary of a compile job."""
    sep = "=" * 60
    print(sep)
    print("Contract build")
    print(sep)
    print(f"  Job:        {result.job_id or '-'}")
    print(f"  Toolchain:  {config.build_program} ({config.toolchain_channel}, {config.target_identity})")
    print(f"  Attempts:   {result.attempts}")
    print(f"  Cache hit:  {result.cache_hit}")
    print(f"  Duration:   {result.duration_seconds:.2f}s")
    if result.artifact is not None:
        print(f"  Program:    {result.artifact.program_name} ({result.artifact.size_bytes} bytes)")
        print(f"  SHA-256:    {result.artifact.bytecode_sha256}")
    print(sep)


def _write_artifact(result: CompileResult, directory: str) -> None:
    if result.artifact is None:
        return
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    (out_dir / f"{result.artifact.program_name}.so").write_bytes(result.artifact.bytecode)
    if result.artifact.idl is not None:
        (out_dir / f"{result.artifact.program_name}.json").write_text(
            json.dumps(result.artifact.idl, indent=2),
            encoding="utf-8",
        )


def _run_compile(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    configure_logging(config)

    archive_path = Path(args.archive)
    if not archive_path.is_file():
        print(f"Error: archive not found: {archive_path}", file=sys.stderr)
        return 1

    result = BuildOrchestrator(config).compile_sync(archive_path.read_bytes())
    _print_summary(result, config)

    if args.output is not None:
        Path(args.output).write_text(json.dumps(result.summary(), indent=2), encoding="utf-8")
    if args.artifact_dir is not None:
        _write_artifact(result, args.artifact_dir)

    if not result.success:
        print(f"Build failed ({result.error_kind}): {result.message}", file=sys.stderr)
        if result.output:
            print(result.output, file=sys.stderr)
        return 1

    print("Build completed successfully.")
    return 0


def _run_patch_registry(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    policy_file = args.policy or config.patch_policy_file
    policy = load_patch_policy(policy_file) if policy_file else default_patch_policy()

    patched = 0
    for directory in args.dirs:
        patched += len(patch_registry_manifests(directory, policy))
    print(f"Patched {patched} manifest(s).")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the contract-build CLI application.

    Returns:
        Exit code: 0 on success, 1 on error.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "compile":
            return _run_compile(args)
        return _run_patch_registry(args)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
