"""Build orchestrator: compile an uploaded source archive end to end.

Provides ``BuildOrchestrator.compile()`` (async) and ``compile_sync()``
as the entry points of the service. A job moves through a linear sequence
of stages::

    validate -> stage -> cache_warm -> pre_patch -> build
        -> [repair -> build] -> harvest -> cache_update -> cleanup

A failing first build is repaired and retried exactly once, and only when
its output matches a known dependency defect signature. ``compile()``
never raises for job failures: every outcome is a ``CompileResult``.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from pathlib import Path
import shutil
import time
from typing import TYPE_CHECKING, Any
import uuid

from contract_build.archive import InputError, extract_archive, validate_archive
from contract_build.cache import ArtifactCache
from contract_build.lockfile import classify_failure, repair_lockfiles
from contract_build.models import (
    BuildConfig,
    BuildJob,
    BuildStage,
    CompiledArtifact,
    CompileResult,
    ErrorKind,
    ExecutionStatus,
)
from contract_build.patching import (
    default_patch_policy,
    find_workspace_root,
    load_patch_policy,
    prepatch_workspace,
)
from contract_build.toolchain import (
    ISOLATED_CARGO_HOME_DIR,
    build_isolated_env,
    global_cargo_home,
    registry_src_dir,
    resolve_real_cargo,
    run_build_tool,
    run_cargo,
    write_repair_wrapper,
)
from contract_build.watcher import ManifestWatcher

if TYPE_CHECKING:
    from contract_build.cancellation import CancellationToken
    from contract_build.models import ExecutionResult, PatchPolicy

logger = logging.getLogger(__name__)

JOBS_DIR = "jobs"
TRUNCATION_MARKER = "\n... [truncated] ...\n"
TIMEOUT_HINT = (
    "The build timed out after {timeout:g}s. First builds download and compile "
    "every dependency and can take much longer; later builds reuse the cache. "
)

# Build outputs removed after warming so harvest only sees this job's files.
_OUTPUT_DIRS = ("deploy", "idl")


def truncate_output(text: str, limit: int) -> str:
    """Keep the head and tail of *text* when it is longer than *limit* characters."""
    if len(text) <= limit:
        return text
    half = limit // 2
    return text[:half] + TRUNCATION_MARKER + text[-half:]


def harvest_artifact(target_dir: Path) -> CompiledArtifact | None:
    """Read the program binary and interface description from a build tree.

    The newest ``deploy/*.so`` is the program; its IDL is
    ``idl/<program>.json`` (or the only JSON file there).
    """
    deploy_dir = target_dir / "deploy"
    binaries = sorted(deploy_dir.glob("*.so")) if deploy_dir.is_dir() else []
    if not binaries:
        return None
    binary = max(binaries, key=lambda p: p.stat().st_mtime)
    bytecode = binary.read_bytes()

    idl: dict[str, Any] | None = None
    idl_dir = target_dir / "idl"
    candidates = [idl_dir / f"{binary.stem}.json"]
    if idl_dir.is_dir():
        others = sorted(idl_dir.glob("*.json"))
        if len(others) == 1:
            candidates.append(others[0])
    for candidate in candidates:
        if not candidate.is_file():
            continue
        try:
            loaded = json.loads(candidate.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable IDL %s: %s", candidate, exc)
            continue
        if isinstance(loaded, dict):
            idl = loaded
            break

    return CompiledArtifact(
        program_name=binary.stem,
        bytecode=bytecode,
        bytecode_sha256=hashlib.sha256(bytecode).hexdigest(),
        idl=idl,
    )


class BuildOrchestrator:
    """Runs compile jobs against one configuration, policy and artifact cache."""

    def __init__(
        self,
        config: BuildConfig | None = None,
        policy: PatchPolicy | None = None,
        cache: ArtifactCache | None = None,
    ) -> None:
        self.config = config or BuildConfig()
        if policy is None:
            if self.config.patch_policy_file:
                policy = load_patch_policy(self.config.patch_policy_file)
            else:
                policy = default_patch_policy()
        self.policy = policy
        self.cache = cache or ArtifactCache(self.config.cache_root)

    # -- entry points --------------------------------------------------------

    async def compile(
        self,
        archive: bytes | None,
        token: CancellationToken | None = None,
    ) -> CompileResult:
        """Compile an uploaded source archive.

        Args:
            archive: Zip archive bytes of the source package.
            token: Caller cancellation, propagated to every spawned process.

        Returns:
            The job outcome. Input problems are reported with
            ``ErrorKind.INPUT_ERROR`` before anything touches the disk.
        """
        started = time.monotonic()
        try:
            payload = validate_archive(archive, self.config.max_archive_bytes)
        except InputError as exc:
            logger.warning("Rejected upload: %s", exc)
            return CompileResult(
                success=False,
                error_kind=ErrorKind.INPUT_ERROR,
                message=str(exc),
                duration_seconds=time.monotonic() - started,
            )

        job = self._new_job()
        logger.info("Compile job %s started (cache key %s)", job.job_id, job.cache_key)
        try:
            result = await self._run(job, payload, token)
        except InputError as exc:
            logger.warning("Job %s rejected: %s", job.job_id, exc)
            result = self._failure(job, ErrorKind.INPUT_ERROR, str(exc))
        except Exception as exc:
            logger.exception("Job %s failed in stage %s", job.job_id, job.stage)
            result = self._failure(job, ErrorKind.INTERNAL_ERROR, f"Internal error: {exc}")
        finally:
            job.stage = BuildStage.CLEANUP
            await asyncio.to_thread(shutil.rmtree, job.staging_dir, ignore_errors=True)
            logger.debug("Removed staging directory %s", job.staging_dir)

        result = result.model_copy(update={"duration_seconds": time.monotonic() - started})
        if result.success:
            logger.info("Job %s succeeded in %.2fs (%d build attempt(s))", job.job_id, result.duration_seconds, job.attempts)
        else:
            logger.error("Job %s failed: %s: %s", job.job_id, result.error_kind, result.message)
        return result

    def compile_sync(
        self,
        archive: bytes | None,
        token: CancellationToken | None = None,
    ) -> CompileResult:
        """Blocking wrapper for :meth:`compile` via ``asyncio.run()``."""
        return asyncio.run(self.compile(archive, token))

    # -- stages ----------------------------------------------------------------

    def _new_job(self) -> BuildJob:
        job_id = uuid.uuid4().hex
        staging = Path(self.config.cache_root) / JOBS_DIR / job_id
        return BuildJob(
            job_id=job_id,
            staging_dir=str(staging),
            cache_key=self.config.cache_key,
        )

    def _failure(
        self,
        job: BuildJob,
        kind: ErrorKind,
        message: str,
        output: str = "",
    ) -> CompileResult:
        return CompileResult(
            success=False,
            job_id=job.job_id,
            error_kind=kind,
            message=message,
            output=truncate_output(output, self.config.output_truncate_chars),
            attempts=job.attempts,
            cache_hit=job.cache_hit,
        )

    async def _run(
        self,
        job: BuildJob,
        archive: bytes,
        token: CancellationToken | None,
    ) -> CompileResult:
        staging = Path(job.staging_dir)

        job.stage = BuildStage.STAGE
        try:
            staging.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            return self._failure(job, ErrorKind.ENVIRONMENT_ERROR, f"Staging directory unavailable: {exc}")
        await asyncio.to_thread(extract_archive, archive, staging)

        job.stage = BuildStage.CACHE_WARM
        job.cache_hit = await self.cache.warm(job.cache_key, job.target_dir)
        for name in _OUTPUT_DIRS:
            await asyncio.to_thread(shutil.rmtree, job.target_dir / name, ignore_errors=True)

        job.stage = BuildStage.PRE_PATCH
        isolated_registry = registry_src_dir(staging / ISOLATED_CARGO_HOME_DIR)
        global_registry = registry_src_dir(global_cargo_home(self.config))
        self._prepare_toolchain(job, [isolated_registry, global_registry])
        await self._prepatch(job, global_registry, token)

        if shutil.which(self.config.build_program, path=job.env.get("PATH")) is None:
            message = f"Build tool not found: {self.config.build_program}"
            return self._failure(job, ErrorKind.ENVIRONMENT_ERROR, message)

        job.stage = BuildStage.BUILD
        registries = [isolated_registry, global_registry]
        result = await self._build(job, registries, token)

        defect = None
        if not result.success and result.status == ExecutionStatus.COMPLETED:
            defect = classify_failure(result.combined_output(), self.policy.defect_signatures)
            if defect is not None:
                logger.warning(
                    "Job %s hit known defect %r (%s); repairing lock files and retrying once",
                    job.job_id,
                    defect.signature,
                    defect.reason,
                )
                job.stage = BuildStage.REPAIR
                repaired = await asyncio.to_thread(repair_lockfiles, staging, self.policy)
                logger.info("Job %s repaired %d lock file(s)", job.job_id, len(repaired))
                await asyncio.sleep(self.config.retry_settle_seconds)
                job.stage = BuildStage.BUILD
                result = await self._build(job, registries, token)
            else:
                logger.info("Job %s failure is not a known defect; not retrying", job.job_id)

        if not result.success:
            return self._build_failure(job, result)

        job.stage = BuildStage.HARVEST
        artifact = await asyncio.to_thread(harvest_artifact, job.target_dir)
        if artifact is None:
            return self._failure(
                job,
                ErrorKind.ARTIFACT_MISSING,
                "Build succeeded but produced no program binary under target/deploy",
                result.combined_output(),
            )

        job.stage = BuildStage.CACHE_UPDATE
        await self.cache.store(job.cache_key, job.target_dir)

        return CompileResult(
            success=True,
            job_id=job.job_id,
            artifact=artifact,
            message=f"Compiled {artifact.program_name} ({artifact.size_bytes} bytes)",
            attempts=job.attempts,
            cache_hit=job.cache_hit,
        )

    def _prepare_toolchain(self, job: BuildJob, registry_dirs: list[Path]) -> None:
        staging = Path(job.staging_dir)
        if self.config.use_repair_wrapper:
            real_cargo = resolve_real_cargo(self.config)
            if real_cargo is None:
                logger.warning("cargo not found; building without the repair wrapper")
            else:
                try:
                    write_repair_wrapper(staging, real_cargo, registry_dirs, self.config.patch_policy_file)
                except OSError as exc:
                    logger.warning("Could not write cargo repair wrapper: %s", exc)
        job.env = build_isolated_env(staging, self.config)

    async def _prepatch(
        self,
        job: BuildJob,
        global_registry: Path,
        token: CancellationToken | None,
    ) -> None:
        staging = Path(job.staging_dir)
        try:
            report = await asyncio.to_thread(
                prepatch_workspace,
                staging,
                self.policy,
                registry_dirs=[global_registry],
                toolchain_channel=self.config.toolchain_channel,
            )
            logger.info("Job %s pre-patch: %s", job.job_id, report.model_dump(exclude_defaults=True))
        except Exception:
            logger.exception("Pre-patch of job %s failed; continuing", job.job_id)

        if not self.config.pregenerate_lockfile:
            return
        workspace_root = find_workspace_root(staging)
        if workspace_root is None:
            return
        await self._pregenerate_lockfile(job, workspace_root.parent, token)

    async def _pregenerate_lockfile(
        self,
        job: BuildJob,
        workspace_dir: Path,
        token: CancellationToken | None,
    ) -> None:
        timeout = self.config.lockfile_timeout_seconds
        generated = await run_cargo(["generate-lockfile"], workspace_dir, env=job.env, timeout=timeout, token=token)
        if not generated.success:
            logger.warning("Could not pre-generate lock file: %s", generated.error_summary())
            return

        for fix in self.policy.crate_fixes:
            if not fix.precise_update:
                continue
            updated = await run_cargo(
                ["update", "-p", fix.name, "--precise", fix.good_version],
                workspace_dir,
                env=job.env,
                timeout=timeout,
                token=token,
            )
            if updated.success:
                logger.info("Forced %s to %s in the pre-generated lock file", fix.name, fix.good_version)
            else:
                logger.warning("Could not force %s to %s: %s", fix.name, fix.good_version, updated.error_summary())

        await asyncio.to_thread(repair_lockfiles, workspace_dir, self.policy)

    async def _build(
        self,
        job: BuildJob,
        registry_dirs: list[Path],
        token: CancellationToken | None,
    ) -> ExecutionResult:
        job.attempts += 1
        logger.info("Job %s build attempt %d", job.job_id, job.attempts)
        async with ManifestWatcher(
            registry_dirs,
            self.policy,
            poll_seconds=self.config.watcher_poll_seconds,
            startup_seconds=self.config.watcher_startup_seconds,
        ):
            return await run_build_tool(self.config, job.staging_dir, env=job.env, token=token)

    def _build_failure(self, job: BuildJob, result: ExecutionResult) -> CompileResult:
        output = result.combined_output()
        if result.status == ExecutionStatus.TIMED_OUT:
            message = TIMEOUT_HINT.format(timeout=self.config.build_timeout_seconds) + result.error_summary()
            return self._failure(job, ErrorKind.TIMEOUT, message, output)
        if result.status == ExecutionStatus.CANCELLED:
            return self._failure(job, ErrorKind.CANCELLED, result.error_summary())
        if result.status == ExecutionStatus.START_FAILED:
            return self._failure(job, ErrorKind.PROCESS_START_ERROR, result.error_summary(), output)
        if result.status == ExecutionStatus.ERROR:
            return self._failure(job, ErrorKind.INTERNAL_ERROR, result.error_summary(), output)

        defect = classify_failure(output, self.policy.defect_signatures)
        if defect is not None:
            message = f"Build failed on a known dependency defect ({defect.signature}) after {job.attempts} attempt(s)"
            return self._failure(job, ErrorKind.KNOWN_DEPENDENCY_DEFECT, message, output)
        message = f"Build failed with exit code {result.exit_code}: {result.error_summary()}"
        return self._failure(job, ErrorKind.UNCLASSIFIED_BUILD_FAILURE, message, output)


async def compile_archive(
    archive: bytes | None,
    config: BuildConfig | None = None,
    token: CancellationToken | None = None,
) -> CompileResult:
    """Compile one archive with a throwaway orchestrator."""
    return await BuildOrchestrator(config).compile(archive, token)


def compile_sync(
    archive: bytes | None,
    config: BuildConfig | None = None,
    token: CancellationToken | None = None,
) -> CompileResult:
    """Synchronous wrapper for :func:`compile_archive` via ``asyncio.run()``."""
    return asyncio.run(compile_archive(archive, config, token))
