"""Core data models for the contract build service.

Defines the Pydantic models, enums and configuration types shared by the
process execution engine, the dependency patch rules and the build
orchestrator. Every value type is frozen; ``BuildJob`` is the only mutable
model because the orchestrator advances it through the pipeline.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
import re
import tempfile
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from contract_build.cancellation import CancellationToken

# ---------------------------------------------------------------------------
# Process execution
# ---------------------------------------------------------------------------


class ExecutionStatus(StrEnum):
    """How a supervised process invocation ended."""

    COMPLETED = "completed"
    START_FAILED = "start_failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    ERROR = "error"


class ExecutionRequest(BaseModel):
    """Everything needed to run one external program.

    The environment is composed explicitly: ``env`` holds the overrides and
    the ambient process environment is only inherited when ``inherit_env``
    is set.

    Attributes:
        program: Executable name (resolved against the composed ``PATH``) or path.
        args: Argument vector, excluding the program itself.
        working_dir: Working directory, or ``None`` for the current one.
        env: Environment variable overrides.
        inherit_env: Start from ``os.environ`` instead of a minimal base.
        timeout_seconds: Wall-clock limit before the process tree is killed.
        token: Optional caller cancellation signal.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    program: str
    args: tuple[str, ...] = ()
    working_dir: str | None = None
    env: Mapping[str, str] = Field(default_factory=dict)
    inherit_env: bool = False
    timeout_seconds: float = 900.0
    token: CancellationToken | None = None

    @field_validator("program")
    @classmethod
    def _program_must_be_nonempty(cls, v: str) -> str:
        if not v.strip():
            msg = "program must not be empty"
            raise ValueError(msg)
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            msg = "timeout_seconds must be > 0"
            raise ValueError(msg)
        return v

    def describe(self) -> str:
        """Return the command line as a single printable string."""
        return " ".join([self.program, *self.args])


class ExecutionResult(BaseModel):
    """Outcome of one supervised process invocation.

    ``exit_code`` is ``-1`` whenever the process never started or was
    aborted before it exited.

    Attributes:
        exit_code: Process exit code, or -1.
        stdout: Captured standard output.
        stderr: Captured standard error (or the failure message).
        success: ``exit_code == 0``.
        duration_seconds: Wall-clock duration; the configured timeout on timeout.
        pid: OS process id, ``None`` if never started.
        started_at: UTC timestamp taken just before spawning.
        status: How the invocation ended.
        error_message: Explanation for any non-completed status.
    """

    model_config = ConfigDict(frozen=True)

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    success: bool = False
    duration_seconds: float = 0.0
    pid: int | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    error_message: str | None = None

    @classmethod
    def failure(
        cls,
        message: str,
        *,
        status: ExecutionStatus,
        duration_seconds: float = 0.0,
        pid: int | None = None,
        started_at: datetime | None = None,
    ) -> ExecutionResult:
        """Build the uniform failure shape (exit code -1, no output)."""
        return cls(
            exit_code=-1,
            stdout="",
            stderr=message,
            success=False,
            duration_seconds=duration_seconds,
            pid=pid,
            started_at=started_at or datetime.now(UTC),
            status=status,
            error_message=message,
        )

    def combined_output(self) -> str:
        """Return stderr and stdout joined, skipping empty streams."""
        return "\n".join(part for part in (self.stderr, self.stdout) if part)

    def error_summary(self) -> str:
        """One-line description of why the invocation did not succeed."""
        if self.error_message:
            return self.error_message
        stderr = self.stderr.strip()
        if stderr:
            return stderr.splitlines()[-1]
        return f"process exited with code {self.exit_code}"


class DaemonKind(StrEnum):
    """Auxiliary long-running services a build or deployment may need."""

    LOCAL_VALIDATOR = "solana-test-validator"
    GANACHE = "ganache"


# ---------------------------------------------------------------------------
# Dependency patch rules
# ---------------------------------------------------------------------------


class ManifestPatchRule(BaseModel):
    """A regex rewrite applied to a dependency manifest.

    The rule only fires when ``guard`` (defaulting to ``pattern``) matches,
    and the replacement text must not itself match ``pattern``, so applying
    the same rule to already-patched content is a no-op.

    Attributes:
        name: Identifier used in log events.
        pattern: Regular expression (multiline mode) selecting the text to rewrite.
        replacement: ``re.sub`` replacement template.
        guard: Optional precondition regex.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    pattern: str
    replacement: str
    guard: str | None = None

    @model_validator(mode="after")
    def _replacement_must_not_rematch(self) -> ManifestPatchRule:
        try:
            compiled = re.compile(self.pattern, re.MULTILINE)
        except re.error as exc:
            msg = f"invalid pattern for rule {self.name!r}: {exc}"
            raise ValueError(msg) from exc
        if self.replacement and compiled.search(self.replacement):
            msg = f"replacement of rule {self.name!r} matches its own pattern"
            raise ValueError(msg)
        return self

    def needs_patch(self, content: str) -> bool:
        """Whether the rule would change *content*."""
        guard = self.guard if self.guard is not None else self.pattern
        return re.search(guard, content, re.MULTILINE) is not None

    def apply(self, content: str) -> str:
        """Return *content* with the rule applied (unchanged if not needed)."""
        if not self.needs_patch(content):
            return content
        return re.sub(self.pattern, self.replacement, content, flags=re.MULTILINE)


class CrateVersionFix(BaseModel):
    """A third-party crate version known to break the pinned toolchain.

    Attributes:
        name: Crate name as it appears in manifests and lock files.
        bad_version: Version that must not be resolved.
        good_version: Compatible version to pin instead.
        precise_update: Force the good version with ``cargo update --precise``
            when pre-generating the lock file.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    bad_version: str
    good_version: str
    precise_update: bool = False

    @property
    def registry_dir_name(self) -> str:
        """Directory name of the bad version inside a registry ``src`` tree."""
        return f"{self.name}-{self.bad_version}"


class DependencyPin(BaseModel):
    """A dependency requirement forced into the job's manifests.

    Attributes:
        name: Dependency key.
        requirement: Raw TOML value, e.g. ``'"=0.3.1"'``.
        in_workspace: Also add it to the workspace root's ``[workspace.dependencies]``.
        replace_existing: Rewrite an existing, different requirement.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    requirement: str
    in_workspace: bool = False
    replace_existing: bool = False

    def line(self) -> str:
        """Render the pin as a TOML key/value line."""
        return f"{self.name} = {self.requirement}"


class RepairAction(StrEnum):
    """Repair passes a known-defect signature can trigger."""

    REPAIR_LOCKFILES = "repair_lockfiles"


class DefectSignature(BaseModel):
    """A recognized failure pattern in toolchain output.

    Attributes:
        signature: Substring searched for in the combined build output.
        repair: Repair pass to run before the single retry.
        reason: Human-readable cause, logged when matched.
    """

    model_config = ConfigDict(frozen=True)

    signature: str
    repair: RepairAction = RepairAction.REPAIR_LOCKFILES
    reason: str = ""

    @field_validator("signature")
    @classmethod
    def _signature_must_be_nonempty(cls, v: str) -> str:
        if not v:
            msg = "signature must not be empty"
            raise ValueError(msg)
        return v

    def matches(self, output: str) -> bool:
        """Whether the signature occurs in *output*."""
        return self.signature in output


class PatchPolicy(BaseModel):
    """Data-driven table of every dependency defect the service knows about.

    Attributes:
        crate_fixes: Bad crate versions and their compatible replacements.
        manifest_rules: Rewrites applied to downloaded crate manifests.
        dependency_pins: Requirements forced into the job's own manifests.
        defect_signatures: Ordered failure signatures that trigger a repair.
        lockfile_version: Lock file format version the toolchain understands.
    """

    model_config = ConfigDict(frozen=True)

    crate_fixes: list[CrateVersionFix] = []
    manifest_rules: list[ManifestPatchRule] = []
    dependency_pins: list[DependencyPin] = []
    defect_signatures: list[DefectSignature] = []
    lockfile_version: int = 3


# ---------------------------------------------------------------------------
# Service configuration
# ---------------------------------------------------------------------------


def _default_cache_root() -> str:
    return str(Path(tempfile.gettempdir()) / "anchor_build_cache")


class BuildConfig(BaseModel):
    """Configuration of the build orchestrator.

    Attributes:
        cache_root: Persistent root holding job staging dirs and cached artifacts.
        max_archive_bytes: Largest accepted upload.
        build_program: External build tool.
        build_args: Arguments for the build tool.
        build_timeout_seconds: Limit for one build invocation.
        lockfile_timeout_seconds: Limit for lock file pre-generation commands.
        retry_settle_seconds: Pause between the repair pass and the retry.
        watcher_poll_seconds: Registry watcher polling interval.
        watcher_startup_seconds: Head start given to the watcher before building.
        kill_grace_seconds: SIGTERM to SIGKILL escalation delay.
        toolchain_channel: Rust channel forced for the build.
        target_identity: Build target, part of the artifact cache key.
        cargo_home: Shared (global) cargo home; ``$CARGO_HOME`` or ``~/.cargo`` if unset.
        stable_bin_dir: Stable toolchain bin dir; ``<cargo_home>/bin`` if unset.
        vendor_bin_dir: Vendor (Solana) toolchain bin dir.
        use_accelerator: Use ``sccache`` as ``RUSTC_WRAPPER`` when found.
        use_repair_wrapper: Generate the cargo repair wrapper for each job.
        pregenerate_lockfile: Generate and downgrade the lock file before building.
        output_truncate_chars: Cap on toolchain output returned to callers.
        patch_policy_file: Optional YAML file replacing the built-in policy.
        log_level: Logging level name.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True)

    cache_root: str = Field(default_factory=_default_cache_root)
    max_archive_bytes: int = 100 * 1024 * 1024
    build_program: str = "anchor"
    build_args: tuple[str, ...] = ("build",)
    build_timeout_seconds: float = 45 * 60
    lockfile_timeout_seconds: float = 10 * 60
    retry_settle_seconds: float = 0.5
    watcher_poll_seconds: float = 0.01
    watcher_startup_seconds: float = 0.1
    kill_grace_seconds: float = 5.0
    toolchain_channel: str = "stable"
    target_identity: str = "sbf-solana-solana"
    cargo_home: str | None = None
    stable_bin_dir: str | None = None
    vendor_bin_dir: str | None = None
    use_accelerator: bool = True
    use_repair_wrapper: bool = True
    pregenerate_lockfile: bool = True
    output_truncate_chars: int = 2000
    patch_policy_file: str | None = None
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator(
        "max_archive_bytes",
        "build_timeout_seconds",
        "lockfile_timeout_seconds",
        "watcher_poll_seconds",
        "kill_grace_seconds",
        "output_truncate_chars",
    )
    @classmethod
    def _must_be_positive(cls, v: float) -> float:
        if v <= 0:
            msg = "Value must be > 0"
            raise ValueError(msg)
        return v

    @field_validator("retry_settle_seconds", "watcher_startup_seconds")
    @classmethod
    def _must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            msg = "Value must be >= 0"
            raise ValueError(msg)
        return v

    @property
    def cache_key(self) -> str:
        """Stable key identifying the toolchain/target artifact cache entry."""
        return f"{self.build_program}-{self.toolchain_channel}-{self.target_identity}"


# ---------------------------------------------------------------------------
# Compile jobs and results
# ---------------------------------------------------------------------------


class ErrorKind(StrEnum):
    """Classification of a failed compile job."""

    INPUT_ERROR = "input_error"
    ENVIRONMENT_ERROR = "environment_error"
    PROCESS_START_ERROR = "process_start_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    KNOWN_DEPENDENCY_DEFECT = "known_dependency_defect"
    UNCLASSIFIED_BUILD_FAILURE = "unclassified_build_failure"
    ARTIFACT_MISSING = "artifact_missing"
    INTERNAL_ERROR = "internal_error"


class BuildStage(StrEnum):
    """Pipeline stages, in execution order."""

    VALIDATE = "validate"
    STAGE = "stage"
    CACHE_WARM = "cache_warm"
    PRE_PATCH = "pre_patch"
    BUILD = "build"
    REPAIR = "repair"
    HARVEST = "harvest"
    CACHE_UPDATE = "cache_update"
    CLEANUP = "cleanup"


class BuildJob(BaseModel):
    """Lifecycle record of one compile request.

    Mutable so the orchestrator can advance ``stage`` and count build
    ``attempts`` as the job progresses.

    Attributes:
        job_id: Unique identifier, also the staging directory name.
        staging_dir: Ephemeral per-job working directory.
        cache_key: Artifact cache entry this job reads and refreshes.
        env: Toolchain environment overrides for the build.
        attempts: Number of build invocations so far (at most 2).
        stage: Current pipeline stage.
        cache_hit: Whether the artifact cache warmed the staging tree.
    """

    job_id: str
    staging_dir: str
    cache_key: str
    env: dict[str, str] = {}
    attempts: int = 0
    stage: BuildStage = BuildStage.VALIDATE
    cache_hit: bool = False

    @property
    def target_dir(self) -> Path:
        """The staging tree's build output directory."""
        return Path(self.staging_dir) / "target"


class CompiledArtifact(BaseModel):
    """Build output returned to the caller.

    Attributes:
        program_name: Program name derived from the produced binary.
        bytecode: Raw program binary.
        bytecode_sha256: Hex digest of ``bytecode``.
        idl: Parsed interface description, if the toolchain produced one.
    """

    model_config = ConfigDict(frozen=True)

    program_name: str
    bytecode: bytes
    bytecode_sha256: str
    idl: dict[str, Any] | None = None

    @property
    def size_bytes(self) -> int:
        """Size of the program binary."""
        return len(self.bytecode)


class CompileResult(BaseModel):
    """Structured outcome of ``compile``; always returned, never raised.

    Attributes:
        success: Whether an artifact was produced.
        job_id: Identifier of the job (``None`` when rejected before staging).
        artifact: The compiled program on success.
        error_kind: Failure classification.
        message: Human-readable summary.
        output: Truncated combined toolchain output on failure.
        attempts: Build invocations performed.
        cache_hit: Whether the build started from a warm artifact cache.
        duration_seconds: Wall-clock time of the whole job.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    job_id: str | None = None
    artifact: CompiledArtifact | None = None
    error_kind: ErrorKind | None = None
    message: str = ""
    output: str = ""
    attempts: int = 0
    cache_hit: bool = False
    duration_seconds: float = 0.0

    def summary(self) -> dict[str, Any]:
        """JSON-friendly view without the raw bytecode."""
        data = self.model_dump(mode="json", exclude={"artifact"})
        if self.artifact is not None:
            data["artifact"] = {
                "program_name": self.artifact.program_name,
                "size_bytes": self.artifact.size_bytes,
                "bytecode_sha256": self.artifact.bytecode_sha256,
                "has_idl": self.artifact.idl is not None,
            }
        return data


class DaemonStatus(BaseModel):
    """Snapshot of a tracked daemon for introspection.

    Attributes:
        kind: Daemon kind.
        pid: OS process id.
        started_at: UTC start timestamp.
        running: Whether the process is still alive.
    """

    model_config = ConfigDict(frozen=True)

    kind: DaemonKind
    pid: int
    started_at: datetime
    running: bool


