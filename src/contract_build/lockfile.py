"""Cargo lock file repair and build-failure classification.

``repair_lockfile_text`` rewrites a lock file so the pinned toolchain can
read it: the format version is downgraded, duplicated keys and
``dependencies`` arrays are dropped, and packages resolved to a known-bad
version are removed or moved to the compatible version (references
included). The result is validated with ``tomllib`` before it is written.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
import tomllib
from typing import TYPE_CHECKING

from contract_build.patching import LOCKFILE_NAME, iter_project_files

if TYPE_CHECKING:
    from collections.abc import Sequence

    from contract_build.models import CrateVersionFix, DefectSignature, PatchPolicy

logger = logging.getLogger(__name__)

_PACKAGE_HEADER = "[[package]]"
_TABLE_HEADER_RE = re.compile(r"^\[\[?[A-Za-z0-9_.\-\" ]+\]\]?\s*(?:#.*)?$")
_KEY_RE = re.compile(r"^\s*([A-Za-z0-9_-]+)\s*=\s*(.*)$")
_STRING_VALUE_RE = re.compile(r'^\s*([A-Za-z0-9_-]+)\s*=\s*"([^"]*)"')
_LOCK_VERSION_RE = re.compile(r"^(\s*version\s*=\s*)(\d+)(\s*)$")


class LockfileError(ValueError):
    """A repaired lock file would not be valid TOML."""


@dataclass
class _Chunk:
    kind: str  # "preamble", "package" or "table"
    lines: list[str] = field(default_factory=list)

    def value(self, key: str) -> str | None:
        for line in self.lines:
            match = _STRING_VALUE_RE.match(line)
            if match and match.group(1) == key:
                return match.group(2)
        return None


def _split(content: str) -> list[_Chunk]:
    chunks = [_Chunk("preamble")]
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped == _PACKAGE_HEADER:
            chunks.append(_Chunk("package"))
        elif _TABLE_HEADER_RE.match(stripped):
            chunks.append(_Chunk("table"))
        chunks[-1].lines.append(line)
    return chunks


def _bracket_depth(text: str) -> int:
    return text.count("[") - text.count("]")


def _dedupe_keys(lines: list[str]) -> list[str]:
    """Drop repeated keys, and the whole array value of a repeated array key."""
    kept: list[str] = []
    seen: set[str] = set()
    skip_depth = 0
    array_depth = 0
    array_entries: set[str] = set()

    for line in lines:
        if skip_depth > 0:
            skip_depth += _bracket_depth(line)
            continue
        if array_depth > 0:
            entry = line.strip()
            array_depth += _bracket_depth(line)
            if array_depth > 0 and entry and entry in array_entries:
                continue
            array_entries.add(entry)
            kept.append(line)
            continue

        match = _KEY_RE.match(line)
        if match is None:
            kept.append(line)
            continue
        key, value = match.groups()
        depth = _bracket_depth(value)
        if key in seen:
            skip_depth = max(depth, 0)
            continue
        seen.add(key)
        if depth > 0:
            array_depth = depth
            array_entries = set()
        kept.append(line)
    return kept


def _rewrite_references(line: str, fixes: Sequence[CrateVersionFix]) -> str:
    for fix in fixes:
        line = re.sub(
            rf'"{re.escape(fix.name)} {re.escape(fix.bad_version)}(?=[ "])',
            f'"{fix.name} {fix.good_version}',
            line,
        )
    return line


def _fix_package(
    chunk: _Chunk,
    fixes: Sequence[CrateVersionFix],
    present: set[tuple[str, str]],
) -> _Chunk | None:
    name = chunk.value("name")
    version = chunk.value("version")
    lines = chunk.lines
    for fix in fixes:
        if fix.name != name or fix.bad_version != version:
            continue
        if (fix.name, fix.good_version) in present:
            logger.info("Dropping %s %s from lock file (%s is resolved)", name, version, fix.good_version)
            return None
        logger.info("Moving %s %s to %s in lock file", name, version, fix.good_version)
        rewritten: list[str] = []
        for line in lines:
            match = _STRING_VALUE_RE.match(line)
            if match and match.group(1) == "checksum":
                continue
            if match and match.group(1) == "version":
                line = line.replace(f'"{fix.bad_version}"', f'"{fix.good_version}"', 1)
            rewritten.append(line)
        lines = rewritten
        break
    return _Chunk(chunk.kind, [_rewrite_references(line, fixes) for line in lines])


def _downgrade_version(chunk: _Chunk, max_version: int) -> _Chunk:
    lines: list[str] = []
    for line in chunk.lines:
        match = _LOCK_VERSION_RE.match(line)
        if match and int(match.group(2)) > max_version:
            line = f"{match.group(1)}{max_version}{match.group(3)}"
        lines.append(line)
    return _Chunk(chunk.kind, lines)


def repair_lockfile_text(content: str, policy: PatchPolicy) -> str:
    """Return *content* repaired according to *policy*.

    Idempotent: repairing an already repaired lock file returns it
    unchanged.

    Raises:
        LockfileError: If the repaired text does not parse as TOML.
    """
    chunks = _split(content)
    present = {
        (chunk.value("name") or "", chunk.value("version") or "")
        for chunk in chunks
        if chunk.kind == "package"
    }

    repaired: list[_Chunk] = []
    resolved: set[tuple[str, str, str]] = set()
    for chunk in chunks:
        if chunk.kind == "preamble":
            repaired.append(_downgrade_version(chunk, policy.lockfile_version))
            continue
        if chunk.kind != "package":
            repaired.append(chunk)
            continue
        fixed = _fix_package(chunk, policy.crate_fixes, present)
        if fixed is None:
            continue
        # Rewritten references can collide, so dedupe after fixing.
        fixed = _Chunk(fixed.kind, _dedupe_keys(fixed.lines))
        identity = (fixed.value("name") or "", fixed.value("version") or "", fixed.value("source") or "")
        if identity in resolved:
            logger.info("Dropping duplicate lock entry %s %s", identity[0], identity[1])
            continue
        resolved.add(identity)
        repaired.append(fixed)

    result = "\n".join(line for chunk in repaired for line in chunk.lines)
    try:
        tomllib.loads(result)
    except tomllib.TOMLDecodeError as exc:
        msg = f"repaired lock file is not valid TOML: {exc}"
        raise LockfileError(msg) from exc
    return result


def repair_lockfiles(staging_dir: str | Path, policy: PatchPolicy) -> list[Path]:
    """Repair every ``Cargo.lock`` in a staging tree in place.

    Lock files that cannot be read or would not parse after repair are
    logged and left untouched.

    Returns:
        Lock files that were rewritten.
    """
    repaired: list[Path] = []
    for lockfile in iter_project_files(Path(staging_dir), LOCKFILE_NAME):
        try:
            original = lockfile.read_text(encoding="utf-8")
            content = repair_lockfile_text(original, policy)
            if content != original:
                lockfile.write_text(content, encoding="utf-8")
                repaired.append(lockfile)
                logger.info("Repaired lock file %s", lockfile)
        except LockfileError as exc:
            logger.warning("Not rewriting %s: %s", lockfile, exc)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not repair %s: %s", lockfile, exc)
    return repaired


def classify_failure(output: str, signatures: Sequence[DefectSignature]) -> DefectSignature | None:
    """Return the first signature found in *output*, in table order."""
    for signature in signatures:
        if signature.matches(output):
            return signature
    return None
