"""Configuration loading, environment overrides and logging setup."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError
import yaml

from contract_build.models import BuildConfig

# ---------------------------------------------------------------------------
# YAML files
# ---------------------------------------------------------------------------


def load_yaml_mapping(path: str | Path, label: str) -> dict[str, Any]:
    """Load a YAML file that must contain a mapping.

    Args:
        path: File path to the YAML file.
        label: Human-readable label for error messages (e.g. "config").

    Returns:
        The parsed YAML content as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file does not parse to a dict.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"{label} file not found: {path}"
        raise FileNotFoundError(msg)

    with open(file_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        msg = f"{label} file must contain a YAML mapping, got {type(data).__name__}"
        raise ValueError(msg)

    return data


def load_config(path: str | Path | None = None) -> BuildConfig:
    """Build a ``BuildConfig`` from an optional YAML file plus env overrides."""
    config = BuildConfig(**load_yaml_mapping(path, "config")) if path is not None else BuildConfig()
    return apply_env_overrides(config)


# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "CONTRACT_BUILD_CACHE_ROOT": "cache_root",
    "CONTRACT_BUILD_PROGRAM": "build_program",
    "CONTRACT_BUILD_TIMEOUT": "build_timeout_seconds",
    "CONTRACT_BUILD_MAX_ARCHIVE_BYTES": "max_archive_bytes",
    "CONTRACT_BUILD_TOOLCHAIN": "toolchain_channel",
    "CONTRACT_BUILD_USE_ACCELERATOR": "use_accelerator",
    "CONTRACT_BUILD_PATCH_POLICY": "patch_policy_file",
    "CONTRACT_BUILD_LOG_LEVEL": "log_level",
    "CONTRACT_BUILD_LOG_FILE": "log_file",
}
"""Maps environment variable names to BuildConfig field names."""

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def apply_env_overrides(config: BuildConfig) -> BuildConfig:
    """Apply ``CONTRACT_BUILD_*`` env var overrides to a config.

    Environment variables override **default** field values only; a field
    whose value differs from the ``BuildConfig`` default is considered
    explicitly set and wins. Unparseable values, and values the model
    validators reject, are ignored.

    Args:
        config: The configuration to apply overrides to.

    Returns:
        A new ``BuildConfig`` with env var overrides applied.
    """
    defaults = BuildConfig()
    overrides: dict[str, Any] = {}

    for env_var, field_name in _ENV_FIELD_MAP.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue

        if getattr(config, field_name) != getattr(defaults, field_name):
            continue

        parsed = _parse_env_value(field_name, env_value)
        if parsed is None:
            continue
        try:
            BuildConfig(**{field_name: parsed})
        except ValidationError:
            continue
        overrides[field_name] = parsed

    if not overrides:
        return config

    return config.model_copy(update=overrides)


def _parse_env_value(field_name: str, raw: str) -> Any:
    """Parse a raw env var string for *field_name*, or ``None`` if invalid."""
    if field_name == "max_archive_bytes":
        try:
            return int(raw)
        except ValueError:
            return None

    if field_name == "build_timeout_seconds":
        try:
            return float(raw)
        except ValueError:
            return None

    if field_name == "use_accelerator":
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        return None

    return raw or None


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"


def configure_logging(config: BuildConfig) -> None:
    """Configure Python logging for the service.

    Sets up the ``"contract_build"`` logger with a console handler and an
    optional file handler. Idempotent; repeated calls do not duplicate
    handlers.
    """
    pkg_logger = logging.getLogger("contract_build")
    pkg_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler) for h in pkg_logger.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        pkg_logger.addHandler(console)

    if config.log_file is not None:
        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == str(Path(config.log_file).resolve())
            for h in pkg_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            pkg_logger.addHandler(file_handler)
