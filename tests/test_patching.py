"""Tests for dependency patch rules (``contract_build.patching``).

Covers the built-in policy, manifest rewrite rules and their idempotence,
registry manifest patching, dependency pinning, ``[patch.crates-io]``
stripping and the pre-build pass over a staging tree.
"""

from __future__ import annotations

from pathlib import Path

from contract_build.models import DependencyPin, PatchPolicy
from contract_build.patching import (
    LOCKFILE_NAME,
    TOOLCHAIN_FILE_NAME,
    default_patch_policy,
    find_workspace_root,
    iter_project_files,
    load_patch_policy,
    patch_manifest_text,
    patch_registry_manifests,
    pin_dependencies,
    pin_manifest_dependencies,
    pin_workspace_dependencies,
    prepatch_workspace,
    strip_patch_section,
)
from hypothesis import given, settings
from hypothesis import strategies as st
import pytest
import yaml

from tests.conftest import DEFAULT_PROJECT

_MODERN_MANIFEST = """cargo-features = ["edition2024"]

[package]
name = "constant_time_eq"
version = "0.4.2"
edition = "2024"
rust-version = "1.85.0"
"""

_MANIFEST_LINES = [
    "[package]",
    'name = "crate"',
    'edition = "2024"',
    'edition = "2021"',
    '  edition = "2024"',
    'rust-version = "1.85"',
    'rust-version = "1.91.1"',
    'rust-version = "1.70"',
    'cargo-features = ["edition2024"]',
    'cargo-features = ["edition2024", "other"]',
    'cargo-features = ["other", "edition2024"]',
    "[dependencies]",
    'serde = "1"',
    "",
]


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _make_project(root: Path, files: dict[str, str] | None = None) -> Path:
    for name, content in (files if files is not None else DEFAULT_PROJECT).items():
        _write(root / name, content)
    return root


# ===========================================================================
# Policy
# ===========================================================================


@pytest.mark.unit
class TestPolicy:
    """The built-in table and YAML loading."""

    def test_default_policy_contents(self) -> None:
        policy = default_patch_policy()
        fixes = {(fix.name, fix.bad_version): fix.good_version for fix in policy.crate_fixes}
        assert fixes[("constant_time_eq", "0.4.2")] == "0.3.1"
        assert fixes[("blake3", "1.8.3")] == "1.8.2"
        assert fixes[("toml_parser", "1.0.6")] == "1.0.4"
        assert policy.lockfile_version == 3
        assert [s.signature for s in policy.defect_signatures][-1] == "lock file version 4"

    def test_load_policy_from_yaml(self, tmp_path: Path) -> None:
        """A YAML file round-trips through PatchPolicy."""
        policy_file = tmp_path / "policy.yaml"
        policy_file.write_text(yaml.safe_dump(default_patch_policy().model_dump(mode="json")))
        assert load_patch_policy(policy_file) == default_patch_policy()

    def test_load_partial_policy(self, tmp_path: Path) -> None:
        policy_file = _write(
            tmp_path / "policy.yaml",
            "crate_fixes:\n  - name: foo\n    bad_version: 2.0.0\n    good_version: 1.9.0\n",
        )
        policy = load_patch_policy(policy_file)
        assert policy.crate_fixes[0].registry_dir_name == "foo-2.0.0"
        assert policy.manifest_rules == []

    def test_load_missing_policy(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_patch_policy(tmp_path / "missing.yaml")

    def test_load_non_mapping_policy(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="YAML mapping"):
            load_patch_policy(_write(tmp_path / "policy.yaml", "- a\n- b\n"))


# ===========================================================================
# Manifest rules
# ===========================================================================


@pytest.mark.unit
class TestManifestRules:
    """Regex rewrites of downloaded crate manifests."""

    def test_modern_manifest_is_downgraded(self) -> None:
        content, applied = patch_manifest_text(_MODERN_MANIFEST, default_patch_policy().manifest_rules)
        assert 'edition = "2021"' in content
        assert 'rust-version = "1.75.0"' in content
        assert "cargo-features" not in content
        assert "edition2024" not in content
        assert applied == ["edition-2024", "cargo-features-edition2024-only", "rust-version"]

    def test_feature_list_keeps_other_features(self) -> None:
        content, _ = patch_manifest_text(
            'cargo-features = ["edition2024", "other"]\n',
            default_patch_policy().manifest_rules,
        )
        assert content == 'cargo-features = ["other"]\n'

    def test_older_rust_version_is_untouched(self) -> None:
        original = '[package]\nrust-version = "1.70"\nedition = "2021"\n'
        content, applied = patch_manifest_text(original, default_patch_policy().manifest_rules)
        assert content == original
        assert applied == []

    @given(st.lists(st.sampled_from(_MANIFEST_LINES), max_size=12))
    @settings(max_examples=200)
    def test_patching_is_idempotent(self, lines: list[str]) -> None:
        """Patching already-patched text changes nothing."""
        rules = default_patch_policy().manifest_rules
        once, _ = patch_manifest_text("\n".join(lines) + "\n", rules)
        twice, applied = patch_manifest_text(once, rules)
        assert twice == once
        assert applied == []


# ===========================================================================
# Registry manifests
# ===========================================================================


@pytest.mark.unit
class TestRegistryPatching:
    """Only known-bad crate directories are rewritten."""

    def test_patches_only_listed_crates(self, tmp_path: Path) -> None:
        index = tmp_path / "registry" / "src" / "index.crates.io-6f17d22bba15001f"
        bad = _write(index / "constant_time_eq-0.4.2" / "Cargo.toml", _MODERN_MANIFEST)
        other = _write(index / "serde-1.0.0" / "Cargo.toml", _MODERN_MANIFEST)

        patched = patch_registry_manifests(tmp_path / "registry" / "src", default_patch_policy())

        assert patched == [bad]
        assert 'edition = "2021"' in bad.read_text()
        assert other.read_text() == _MODERN_MANIFEST
        assert patch_registry_manifests(tmp_path / "registry" / "src", default_patch_policy()) == []

    def test_missing_registry_is_ignored(self, tmp_path: Path) -> None:
        assert patch_registry_manifests(tmp_path / "nope", default_patch_policy()) == []


# ===========================================================================
# Dependency pins
# ===========================================================================


@pytest.mark.unit
class TestPins:
    """Forcing dependency requirements into job manifests."""

    def test_adds_missing_pins(self) -> None:
        content = '[package]\nname = "demo"\n\n[dependencies]\nanchor-lang = "0.30.1"\n'
        pins = [DependencyPin(name="borsh", requirement='"=1.5.7"')]
        patched, changed = pin_manifest_dependencies(content, pins)
        assert changed == ["borsh"]
        assert patched.endswith('[dependencies]\nanchor-lang = "0.30.1"\nborsh = "=1.5.7"\n')

    def test_pins_stay_inside_their_table(self) -> None:
        content = '[dependencies]\na = "1"\n\n[dev-dependencies]\nb = "2"\n'
        patched, _ = pin_manifest_dependencies(content, [DependencyPin(name="c", requirement='"3"')])
        assert patched == '[dependencies]\na = "1"\nc = "3"\n\n[dev-dependencies]\nb = "2"\n'

    def test_existing_requirement_kept_without_replace(self) -> None:
        content = '[dependencies]\nborsh = "1.6"\n'
        patched, changed = pin_manifest_dependencies(content, [DependencyPin(name="borsh", requirement='"=1.5.7"')])
        assert patched == content
        assert changed == []

    def test_existing_requirement_replaced(self) -> None:
        content = '[dependencies]\nblake3 = "1.8"\nserde = "1"\n'
        pin = DependencyPin(name="blake3", requirement='"=1.8.2"', replace_existing=True)
        patched, changed = pin_manifest_dependencies(content, [pin])
        assert patched == '[dependencies]\nblake3 = "=1.8.2"\nserde = "1"\n'
        assert changed == ["blake3"]
        assert pin_manifest_dependencies(patched, [pin]) == (patched, [])

    def test_table_requirement_is_left_alone(self) -> None:
        content = '[dependencies]\nblake3 = { version = "1.8", default-features = false }\n'
        pin = DependencyPin(name="blake3", requirement='"=1.8.2"', replace_existing=True)
        assert pin_manifest_dependencies(content, [pin]) == (content, [])

    def test_member_without_dependencies_table_is_untouched(self) -> None:
        content = '[package]\nname = "demo"\n'
        assert pin_manifest_dependencies(content, default_patch_policy().dependency_pins) == (content, [])

    def test_workspace_table_is_created(self) -> None:
        content = '[workspace]\nmembers = ["programs/*"]\n'
        patched, changed = pin_workspace_dependencies(content, default_patch_policy().dependency_pins)
        assert changed == ["constant_time_eq", "blake3", "getrandom"]
        assert patched == (
            '[workspace]\nmembers = ["programs/*"]\n\n[workspace.dependencies]\n'
            'constant_time_eq = "=0.3.1"\n'
            'blake3 = "=1.8.2"\n'
            'getrandom = { version = ">=0.2", features = ["custom"] }\n'
        )
        assert pin_workspace_dependencies(patched, default_patch_policy().dependency_pins) == (patched, [])

    def test_create_on_empty_content(self) -> None:
        patched, changed = pin_dependencies("", "dependencies", [DependencyPin(name="a", requirement='"1"')], create=True)
        assert patched == '[dependencies]\na = "1"\n'
        assert changed == ["a"]


# ===========================================================================
# [patch.crates-io]
# ===========================================================================


@pytest.mark.unit
class TestStripPatchSection:
    """Member-level crates.io overrides are removed."""

    def test_strips_section(self) -> None:
        content = (
            '[package]\nname = "demo"\n\n[patch.crates-io]\nblake3 = { git = "https://example.com/blake3" }\n\n'
            '[dependencies]\nserde = "1"\n'
        )
        stripped, changed = strip_patch_section(content)
        assert changed is True
        assert "patch.crates-io" not in stripped
        assert "example.com" not in stripped
        assert stripped.endswith('[dependencies]\nserde = "1"\n')

    def test_no_section(self) -> None:
        assert strip_patch_section('[package]\nname = "demo"\n') == ('[package]\nname = "demo"\n', False)


# ===========================================================================
# Pre-build pass
# ===========================================================================


@pytest.mark.unit
class TestPrepatchWorkspace:
    """The best-effort pass over a staging tree."""

    def test_iter_project_files_skips_build_dirs(self, tmp_path: Path) -> None:
        _write(tmp_path / "Cargo.toml", "")
        _write(tmp_path / "programs" / "demo" / "Cargo.toml", "")
        _write(tmp_path / "target" / "debug" / "Cargo.toml", "")
        _write(tmp_path / "node_modules" / "x" / "Cargo.toml", "")
        _write(tmp_path / ".anchor" / "Cargo.toml", "")
        found = sorted(iter_project_files(tmp_path, "Cargo.toml"))
        assert found == [tmp_path / "Cargo.toml", tmp_path / "programs" / "demo" / "Cargo.toml"]

    def test_find_workspace_root(self, tmp_path: Path) -> None:
        assert find_workspace_root(tmp_path) is None
        _write(tmp_path / "Cargo.toml", '[package]\nname = "solo"\n')
        assert find_workspace_root(tmp_path) is None
        _write(tmp_path / "Cargo.toml", "[workspace]\nmembers = []\n")
        assert find_workspace_root(tmp_path) == tmp_path / "Cargo.toml"

    def test_full_pass(self, tmp_path: Path) -> None:
        staging = _make_project(tmp_path / "job")
        _write(staging / LOCKFILE_NAME, "version = 4\n")
        _write(staging / "programs" / "demo" / LOCKFILE_NAME, "version = 4\n")
        _write(staging / ".cargo" / "config.toml", "[build]\n")
        member = staging / "programs" / "demo" / "Cargo.toml"
        member.write_text(member.read_text() + '\n[patch.crates-io]\nborsh = { path = "../borsh" }\n')
        registry = tmp_path / "cargo_home" / "registry" / "src"
        registry_manifest = _write(registry / "index" / "blake3-1.8.3" / "Cargo.toml", _MODERN_MANIFEST)

        report = prepatch_workspace(staging, default_patch_policy(), registry_dirs=[registry], toolchain_channel="1.79.0")

        assert report.changed is True
        assert report.registry_manifests == [str(registry_manifest)]
        assert not (staging / LOCKFILE_NAME).exists()
        assert not (staging / "programs" / "demo" / LOCKFILE_NAME).exists()
        assert not (staging / ".cargo" / "config.toml").exists()
        assert (staging / TOOLCHAIN_FILE_NAME).read_text() == '[toolchain]\nchannel = "1.79.0"\n'
        assert report.workspace_root == str(staging / "Cargo.toml")
        assert "[workspace.dependencies]" in (staging / "Cargo.toml").read_text()
        member_text = member.read_text()
        assert "patch.crates-io" not in member_text
        assert 'solana-program = "<2.3"' in member_text
        assert report.stripped_patch_sections == [str(member)]
        assert sorted(report.pinned_manifests) == sorted([str(staging / "Cargo.toml"), str(member)])

    def test_second_pass_changes_nothing(self, tmp_path: Path) -> None:
        staging = _make_project(tmp_path / "job")
        prepatch_workspace(staging, default_patch_policy())
        before = {path: path.read_text() for path in iter_project_files(staging, "Cargo.toml")}

        report = prepatch_workspace(staging, default_patch_policy())

        assert report.changed is False
        assert {path: path.read_text() for path in iter_project_files(staging, "Cargo.toml")} == before

    def test_empty_policy_only_pins_toolchain(self, tmp_path: Path) -> None:
        staging = _make_project(tmp_path / "job")
        original = (staging / "Cargo.toml").read_text()
        report = prepatch_workspace(staging, PatchPolicy())
        assert report.toolchain_file == str(staging / TOOLCHAIN_FILE_NAME)
        assert report.pinned_manifests == []
        assert (staging / "Cargo.toml").read_text() == original
