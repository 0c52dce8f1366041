"""Dependency patch rules for downloaded crates and uploaded manifests.

The curated table of known-incompatible crate versions lives in a
``PatchPolicy``. ``default_patch_policy()`` returns the built-in table;
``load_patch_policy()`` reads a replacement from YAML. Every operation here
is idempotent: running a pass over already-patched files changes nothing.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import re
from typing import TYPE_CHECKING

from pydantic import BaseModel

from contract_build.config import load_yaml_mapping
from contract_build.models import (
    CrateVersionFix,
    DefectSignature,
    DependencyPin,
    ManifestPatchRule,
    PatchPolicy,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

logger = logging.getLogger(__name__)

MANIFEST_NAME = "Cargo.toml"
LOCKFILE_NAME = "Cargo.lock"
TOOLCHAIN_FILE_NAME = "rust-toolchain.toml"

# Directories never searched for job manifests.
_SKIP_DIRS = frozenset({"target", "node_modules", ".git", ".anchor"})
_CARGO_CONFIG_NAMES = ("config.toml", "config")


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def default_patch_policy() -> PatchPolicy:
    """The built-in table of known dependency defects."""
    return PatchPolicy(
        crate_fixes=[
            CrateVersionFix(name="constant_time_eq", bad_version="0.4.2", good_version="0.3.1"),
            CrateVersionFix(
                name="blake3",
                bad_version="1.8.3",
                good_version="1.8.2",
                precise_update=True,
            ),
            CrateVersionFix(name="borsh", bad_version="1.6.0", good_version="1.5.7"),
            CrateVersionFix(name="solana-program", bad_version="2.3.0", good_version="2.2.1"),
            CrateVersionFix(name="toml_parser", bad_version="1.0.6", good_version="1.0.4"),
            CrateVersionFix(name="toml_parser", bad_version="1.0.5", good_version="1.0.4"),
        ],
        manifest_rules=[
            ManifestPatchRule(
                name="edition-2024",
                pattern=r'^(\s*edition\s*=\s*)"2024"',
                replacement=r'\g<1>"2021"',
            ),
            ManifestPatchRule(
                name="cargo-features-edition2024-only",
                pattern=r'^[ \t]*cargo-features\s*=\s*\[\s*"edition2024"\s*,?\s*\][ \t]*\n?',
                replacement="",
            ),
            ManifestPatchRule(
                name="cargo-features-edition2024",
                pattern=r'"edition2024"\s*,?\s*',
                replacement="",
            ),
            ManifestPatchRule(
                name="rust-version",
                pattern=r'^(\s*rust-version\s*=\s*)"1\.(?:8[5-9]|9[0-9])(?:\.[0-9]+)?"',
                replacement=r'\g<1>"1.75.0"',
            ),
        ],
        dependency_pins=[
            DependencyPin(
                name="constant_time_eq",
                requirement='"=0.3.1"',
                in_workspace=True,
                replace_existing=True,
            ),
            DependencyPin(name="borsh", requirement='"=1.5.7"'),
            DependencyPin(name="solana-program", requirement='"<2.3"'),
            DependencyPin(name="toml_edit", requirement='"<0.23"'),
            DependencyPin(name="toml_parser", requirement='"=1.0.4"'),
            DependencyPin(
                name="blake3",
                requirement='"=1.8.2"',
                in_workspace=True,
                replace_existing=True,
            ),
            DependencyPin(
                name="getrandom",
                requirement='{ version = ">=0.2", features = ["custom"] }',
                in_workspace=True,
            ),
        ],
        defect_signatures=[
            DefectSignature(signature="constant_time_eq v0.4.2", reason="constant_time_eq 0.4.2 needs a newer rustc"),
            DefectSignature(signature="constant_time_eq 0.4.2", reason="constant_time_eq 0.4.2 needs a newer rustc"),
            DefectSignature(signature="blake3 v1.8.3", reason="blake3 1.8.3 pulls in constant_time_eq 0.4.2"),
            DefectSignature(signature="blake3 1.8.3", reason="blake3 1.8.3 pulls in constant_time_eq 0.4.2"),
            DefectSignature(signature="edition2024", reason="a dependency requires the 2024 edition"),
            DefectSignature(signature="duplicate key", reason="the lock file has duplicated keys"),
            DefectSignature(signature="TOML parse error", reason="the lock file does not parse"),
            DefectSignature(signature="lock file version 4", reason="the lock file format is too new"),
        ],
        lockfile_version=3,
    )


def load_patch_policy(path: str | Path) -> PatchPolicy:
    """Read a ``PatchPolicy`` from a YAML mapping.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the file is not a YAML mapping or fails validation.
    """
    return PatchPolicy.model_validate(load_yaml_mapping(path, "patch policy"))


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _section_span(content: str, header: str) -> tuple[int, int] | None:
    """Character span of the ``[header]`` table, header line included."""
    match = re.search(rf"^\[{re.escape(header)}\][ \t]*(?:#.*)?$", content, re.MULTILINE)
    if match is None:
        return None
    start = match.start()
    next_header = re.search(r"^[ \t]*\[", content[match.end() :], re.MULTILINE)
    end = match.end() + next_header.start() - 1 if next_header else len(content)
    return start, max(end, match.end())


def _key_pattern(name: str) -> re.Pattern[str]:
    return re.compile(rf'^[ \t]*"?{re.escape(name)}"?[ \t]*[=.]', re.MULTILINE)


def _append_to_section(content: str, span: tuple[int, int], lines: Sequence[str]) -> str:
    start, end = span
    body = content[start:end]
    stripped = body.rstrip("\n")
    trailing = body[len(stripped) :]
    if not trailing and end == len(content):
        trailing = "\n"
    return content[:start] + stripped + "\n" + "\n".join(lines) + trailing + content[end:]


def patch_manifest_text(content: str, rules: Iterable[ManifestPatchRule]) -> tuple[str, list[str]]:
    """Apply every rule that needs applying.

    Returns:
        The patched text and the names of the rules that fired.
    """
    applied: list[str] = []
    for rule in rules:
        if rule.needs_patch(content):
            content = rule.apply(content)
            applied.append(rule.name)
    return content, applied


def pin_dependencies(
    content: str,
    header: str,
    pins: Iterable[DependencyPin],
    *,
    create: bool = False,
) -> tuple[str, list[str]]:
    """Force *pins* into the ``[header]`` table of a manifest.

    Missing keys are appended to the table. Existing simple string
    requirements are rewritten when the pin has ``replace_existing``.

    Args:
        content: Manifest text.
        header: Table name, e.g. ``dependencies``.
        pins: Requirements to force.
        create: Add the table at the end of the file when it is missing.

    Returns:
        The new text and the names of the pins that changed it.
    """
    pins = list(pins)
    if not pins:
        return content, []
    changed: list[str] = []

    if _section_span(content, header) is None:
        if not create:
            return content, []
        separator = "" if not content or content.endswith("\n\n") else ("\n" if content.endswith("\n") else "\n\n")
        content = f"{content}{separator}[{header}]\n"

    for pin in pins:
        span = _section_span(content, header)
        if span is None:
            break
        start, end = span
        body = content[start:end]
        if _key_pattern(pin.name).search(body) is None:
            content = _append_to_section(content, span, [pin.line()])
            changed.append(pin.name)
            continue
        if not pin.replace_existing:
            continue
        value = re.compile(rf'^([ \t]*"?{re.escape(pin.name)}"?[ \t]*=[ \t]*)"[^"\n]*"', re.MULTILINE)
        match = value.search(body)
        if match is None or match.group(0)[len(match.group(1)) :] == pin.requirement:
            continue
        new_body = body[: match.start()] + match.group(1) + pin.requirement + body[match.end() :]
        content = content[:start] + new_body + content[end:]
        changed.append(pin.name)
    return content, changed


def pin_manifest_dependencies(content: str, pins: Iterable[DependencyPin]) -> tuple[str, list[str]]:
    """Pin member ``[dependencies]`` (only when the table exists)."""
    return pin_dependencies(content, "dependencies", pins)


def pin_workspace_dependencies(content: str, pins: Iterable[DependencyPin]) -> tuple[str, list[str]]:
    """Pin ``[workspace.dependencies]`` of a workspace root, creating the table."""
    return pin_dependencies(
        content,
        "workspace.dependencies",
        [pin for pin in pins if pin.in_workspace],
        create=True,
    )


def strip_patch_section(content: str) -> tuple[str, bool]:
    """Remove a ``[patch.crates-io]`` table."""
    span = _section_span(content, "patch.crates-io")
    if span is None:
        return content, False
    start, end = span
    tail = content[end:].lstrip("\n")
    head = content[:start]
    return head + tail, True


# ---------------------------------------------------------------------------
# File passes
# ---------------------------------------------------------------------------


def _walk(root: Path, keep_hidden: frozenset[str] = frozenset()) -> Iterator[tuple[Path, list[str]]]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if d not in _SKIP_DIRS and (not d.startswith(".") or d in keep_hidden)
        )
        yield Path(dirpath), filenames


def iter_project_files(root: Path, name: str) -> Iterator[Path]:
    """Yield files called *name* under *root*, skipping build and hidden dirs."""
    for directory, filenames in _walk(root):
        if name in filenames:
            yield directory / name


def _rewrite(path: Path, content: str, original: str) -> bool:
    if content == original:
        return False
    path.write_text(content, encoding="utf-8")
    return True


def patch_registry_manifests(registry_src: str | Path, policy: PatchPolicy) -> list[Path]:
    """Patch the manifests of known-bad crate versions in a registry.

    *registry_src* is a cargo ``registry/src`` directory; each index
    subdirectory holds unpacked crates named ``<crate>-<version>``.

    Returns:
        Manifests rewritten by this pass.
    """
    root = Path(registry_src)
    if not root.is_dir():
        return []
    targets = sorted({fix.registry_dir_name for fix in policy.crate_fixes})
    patched: list[Path] = []
    for index_dir in root.iterdir():
        if not index_dir.is_dir():
            continue
        for dir_name in targets:
            manifest = index_dir / dir_name / MANIFEST_NAME
            if not manifest.is_file():
                continue
            try:
                original = manifest.read_text(encoding="utf-8")
                content, applied = patch_manifest_text(original, policy.manifest_rules)
                if _rewrite(manifest, content, original):
                    patched.append(manifest)
                    logger.info("Patched registry manifest %s (%s)", manifest, ", ".join(applied))
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Could not patch registry manifest %s: %s", manifest, exc)
    return patched


class PrePatchReport(BaseModel):
    """What the pre-build patch pass changed in a staging tree."""

    registry_manifests: list[str] = []
    removed_lockfiles: list[str] = []
    removed_cargo_configs: list[str] = []
    toolchain_file: str | None = None
    workspace_root: str | None = None
    pinned_manifests: list[str] = []
    stripped_patch_sections: list[str] = []

    @property
    def changed(self) -> bool:
        return any(
            (
                self.registry_manifests,
                self.removed_lockfiles,
                self.removed_cargo_configs,
                self.toolchain_file,
                self.pinned_manifests,
                self.stripped_patch_sections,
            )
        )


def find_workspace_root(staging_dir: Path) -> Path | None:
    """Top-level ``Cargo.toml`` declaring ``[workspace]``, if any."""
    manifest = staging_dir / MANIFEST_NAME
    try:
        if manifest.is_file() and re.search(r"^\[workspace\]", manifest.read_text(encoding="utf-8"), re.MULTILINE):
            return manifest
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Could not read %s: %s", manifest, exc)
    return None


def _remove_stale_files(staging: Path, report: PrePatchReport) -> None:
    for lockfile in iter_project_files(staging, LOCKFILE_NAME):
        try:
            lockfile.unlink()
            report.removed_lockfiles.append(str(lockfile))
            logger.info("Removed stale lock file %s", lockfile)
        except OSError as exc:
            logger.warning("Could not remove %s: %s", lockfile, exc)

    for directory, filenames in _walk(staging, keep_hidden=frozenset({".cargo"})):
        if directory.name != ".cargo":
            continue
        for name in _CARGO_CONFIG_NAMES:
            if name in filenames:
                _remove_config(directory / name, report)


def _remove_config(config_file: Path, report: PrePatchReport) -> None:
    try:
        config_file.unlink()
        report.removed_cargo_configs.append(str(config_file))
        logger.info("Removed cargo config %s", config_file)
    except OSError as exc:
        logger.warning("Could not remove %s: %s", config_file, exc)


def _write_toolchain_file(staging: Path, channel: str, report: PrePatchReport) -> None:
    toolchain_file = staging / TOOLCHAIN_FILE_NAME
    content = f'[toolchain]\nchannel = "{channel}"\n'
    try:
        if not toolchain_file.is_file() or toolchain_file.read_text(encoding="utf-8") != content:
            toolchain_file.write_text(content, encoding="utf-8")
            report.toolchain_file = str(toolchain_file)
            logger.info("Pinned toolchain channel %s in %s", channel, toolchain_file)
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Could not write %s: %s", toolchain_file, exc)


def _patch_job_manifests(staging: Path, policy: PatchPolicy, report: PrePatchReport) -> None:
    workspace_root = find_workspace_root(staging)
    if workspace_root is not None:
        report.workspace_root = str(workspace_root)

    for manifest in iter_project_files(staging, MANIFEST_NAME):
        try:
            original = manifest.read_text(encoding="utf-8")
            content = original
            if manifest == workspace_root:
                content, pinned = pin_workspace_dependencies(content, policy.dependency_pins)
            else:
                content, stripped = strip_patch_section(content)
                if stripped:
                    report.stripped_patch_sections.append(str(manifest))
                    logger.info("Removed [patch.crates-io] from %s", manifest)
                content, pinned = pin_manifest_dependencies(content, policy.dependency_pins)
            if pinned:
                report.pinned_manifests.append(str(manifest))
                logger.info("Pinned %s in %s", ", ".join(pinned), manifest)
            _rewrite(manifest, content, original)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not patch manifest %s: %s", manifest, exc)


def prepatch_workspace(
    staging_dir: str | Path,
    policy: PatchPolicy,
    *,
    registry_dirs: Sequence[Path] = (),
    toolchain_channel: str = "stable",
) -> PrePatchReport:
    """Best-effort pre-build pass over a staging tree.

    Patches known-bad crates in the given registries, removes stale
    ``Cargo.lock`` and ``.cargo/config.toml`` files, pins the toolchain
    channel, pins workspace and member dependencies and strips member
    ``[patch.crates-io]`` tables. Failures are logged and skipped.
    """
    staging = Path(staging_dir)
    report = PrePatchReport()
    for registry in registry_dirs:
        report.registry_manifests.extend(str(p) for p in patch_registry_manifests(registry, policy))
    _remove_stale_files(staging, report)
    _write_toolchain_file(staging, toolchain_channel, report)
    _patch_job_manifests(staging, policy, report)
    return report
