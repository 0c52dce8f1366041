"""Tests for configuration loading, env overrides and logging setup."""

from __future__ import annotations

from collections.abc import Iterator
import logging
from pathlib import Path

from contract_build.config import apply_env_overrides, configure_logging, load_config, load_yaml_mapping
from contract_build.models import BuildConfig
import pytest


@pytest.fixture()
def clean_logger() -> Iterator[logging.Logger]:
    """The package logger with its handlers restored after the test."""
    pkg_logger = logging.getLogger("contract_build")
    saved_handlers = list(pkg_logger.handlers)
    saved_level = pkg_logger.level
    yield pkg_logger
    for handler in pkg_logger.handlers:
        if handler not in saved_handlers:
            handler.close()
    pkg_logger.handlers = saved_handlers
    pkg_logger.setLevel(saved_level)


@pytest.mark.unit
class TestLoadConfig:
    """YAML files and defaults."""

    def test_defaults_without_file(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CONTRACT_BUILD_PROGRAM", raising=False)
        assert load_config().build_program == "anchor"

    def test_yaml_file(self, tmp_path: Path) -> None:
        path = tmp_path / "build.yaml"
        path.write_text("build_program: /opt/anchor\nbuild_timeout_seconds: 60\nbuild_args: [build, --verifiable]\n")
        config = load_config(path)
        assert config.build_program == "/opt/anchor"
        assert config.build_timeout_seconds == 60
        assert config.build_args == ("build", "--verifiable")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="config file not found"):
            load_config(tmp_path / "missing.yaml")

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "build.yaml"
        path.write_text("just a string\n")
        with pytest.raises(ValueError, match="must contain a YAML mapping, got str"):
            load_yaml_mapping(path, "config")


@pytest.mark.unit
class TestEnvOverrides:
    """CONTRACT_BUILD_* variables override default-valued fields."""

    def test_overrides_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONTRACT_BUILD_CACHE_ROOT", "/srv/cache")
        monkeypatch.setenv("CONTRACT_BUILD_TIMEOUT", "120")
        monkeypatch.setenv("CONTRACT_BUILD_MAX_ARCHIVE_BYTES", "2048")
        monkeypatch.setenv("CONTRACT_BUILD_USE_ACCELERATOR", "no")
        monkeypatch.setenv("CONTRACT_BUILD_LOG_LEVEL", "DEBUG")
        config = apply_env_overrides(BuildConfig())
        assert config.cache_root == "/srv/cache"
        assert config.build_timeout_seconds == 120.0
        assert config.max_archive_bytes == 2048
        assert config.use_accelerator is False
        assert config.log_level == "DEBUG"

    def test_explicit_values_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONTRACT_BUILD_PROGRAM", "/env/anchor")
        config = apply_env_overrides(BuildConfig(build_program="/explicit/anchor"))
        assert config.build_program == "/explicit/anchor"

    @pytest.mark.parametrize(
        ("var", "value", "field"),
        [
            ("CONTRACT_BUILD_TIMEOUT", "soon", "build_timeout_seconds"),
            ("CONTRACT_BUILD_TIMEOUT", "-5", "build_timeout_seconds"),
            ("CONTRACT_BUILD_MAX_ARCHIVE_BYTES", "1.5", "max_archive_bytes"),
            ("CONTRACT_BUILD_USE_ACCELERATOR", "maybe", "use_accelerator"),
            ("CONTRACT_BUILD_PROGRAM", "", "build_program"),
        ],
    )
    def test_invalid_values_are_ignored(self, monkeypatch: pytest.MonkeyPatch, var: str, value: str, field: str) -> None:
        monkeypatch.setenv(var, value)
        assert getattr(apply_env_overrides(BuildConfig()), field) == getattr(BuildConfig(), field)

    def test_unset_returns_same_object(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for var in (
            "CONTRACT_BUILD_CACHE_ROOT",
            "CONTRACT_BUILD_PROGRAM",
            "CONTRACT_BUILD_TIMEOUT",
            "CONTRACT_BUILD_MAX_ARCHIVE_BYTES",
            "CONTRACT_BUILD_TOOLCHAIN",
            "CONTRACT_BUILD_USE_ACCELERATOR",
            "CONTRACT_BUILD_PATCH_POLICY",
            "CONTRACT_BUILD_LOG_LEVEL",
            "CONTRACT_BUILD_LOG_FILE",
        ):
            monkeypatch.delenv(var, raising=False)
        config = BuildConfig()
        assert apply_env_overrides(config) is config

    def test_load_config_applies_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONTRACT_BUILD_TOOLCHAIN", "1.79.0")
        path = tmp_path / "build.yaml"
        path.write_text("build_program: /opt/anchor\n")
        config = load_config(path)
        assert config.toolchain_channel == "1.79.0"
        assert config.build_program == "/opt/anchor"


@pytest.mark.unit
class TestConfigureLogging:
    """Handlers on the package logger."""

    def test_console_handler_is_idempotent(self, clean_logger: logging.Logger) -> None:
        clean_logger.handlers = []
        configure_logging(BuildConfig(log_level="DEBUG"))
        configure_logging(BuildConfig(log_level="DEBUG"))
        assert len(clean_logger.handlers) == 1
        assert clean_logger.level == logging.DEBUG

    def test_file_handler(self, tmp_path: Path, clean_logger: logging.Logger) -> None:
        clean_logger.handlers = []
        log_file = tmp_path / "build.log"
        config = BuildConfig(log_file=str(log_file))
        configure_logging(config)
        configure_logging(config)
        file_handlers = [h for h in clean_logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1

        logging.getLogger("contract_build.pipeline").info("hello from the pipeline")
        file_handlers[0].flush()
        text = log_file.read_text()
        assert "INFO" in text
        assert "contract_build.pipeline" in text
        assert "hello from the pipeline" in text

    def test_unknown_level_falls_back_to_info(self, clean_logger: logging.Logger) -> None:
        configure_logging(BuildConfig(log_level="chatty"))
        assert clean_logger.level == logging.INFO
