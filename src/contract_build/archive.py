"""Validation and extraction of uploaded source archives."""

from __future__ import annotations

import io
import logging
from pathlib import Path
import zipfile

logger = logging.getLogger(__name__)


class InputError(ValueError):
    """The uploaded archive is missing, too large or not a zip archive."""


def validate_archive(data: bytes | None, max_bytes: int) -> bytes:
    """Reject unusable uploads before anything is written to disk.

    Returns:
        The archive bytes, once they are known to be usable.

    Raises:
        InputError: If *data* is missing or empty, larger than *max_bytes*,
            or not a zip archive.
    """
    if not data:
        msg = "Source archive is missing or empty"
        raise InputError(msg)
    if len(data) > max_bytes:
        msg = f"Source archive is {len(data)} bytes; the limit is {max_bytes} bytes"
        raise InputError(msg)
    if not zipfile.is_zipfile(io.BytesIO(data)):
        msg = "Source archive is not a zip archive"
        raise InputError(msg)
    return data


def extract_archive(data: bytes, dest: str | Path) -> list[Path]:
    """Extract a zip archive into *dest*, refusing members that escape it.

    Returns:
        Extracted file paths.

    Raises:
        InputError: If the archive is corrupt or a member path escapes *dest*.
    """
    root = Path(dest).resolve()
    extracted: list[Path] = []
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            for member in archive.infolist():
                target = (root / member.filename).resolve()
                if not target.is_relative_to(root):
                    msg = f"Archive member escapes the staging directory: {member.filename}"
                    raise InputError(msg)
                archive.extract(member, root)
                if not member.is_dir():
                    extracted.append(target)
    except zipfile.BadZipFile as exc:
        msg = f"Source archive is corrupt: {exc}"
        raise InputError(msg) from exc
    logger.info("Extracted %d file(s) into %s", len(extracted), root)
    return extracted
