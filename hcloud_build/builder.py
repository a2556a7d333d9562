"""
Build orchestration: provision -> [setup] -> build -> [snapshot] -> fetch.

Sequential mode stops at the first failing architecture. Parallel mode
provisions every server first, then runs one build task per architecture
with its own log file; a failing task never cancels its siblings, and the
aggregate result is decided only after all of them finished.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
import typing as t
from dataclasses import dataclass, field
from pathlib import Path

from ._types import Console
from .artifacts import fetch as fetch_artifact
from .config import REMOTE_CREDENTIAL_PATH, BuildConfig
from .errors import BuildFailed, HcloudBuildError, TransportError
from .guardian import CleanupGuardian
from .lifecycle import SETTLE_DELAY, ServerLifecycleManager
from .logs import LogAggregator
from .models import (
    Architecture,
    ArtifactRecord,
    BuildRun,
    BuildTarget,
    ManagedInstance,
    Outcome,
    SnapshotRecord,
)
from .provider import HetznerGateway
from .remote import RemoteExecutor
from .retry import REGISTRATION, SSH_READY, RetryPolicy
from .scripts import render_build_script, render_setup_script
from .snapshots import SnapshotResolver


@dataclass(slots=True)
class OrchestrationContext:
    """Everything one invocation owns; built at startup and dropped at exit."""

    config: BuildConfig
    console: Console
    gateway: HetznerGateway
    executor: RemoteExecutor
    resolver: SnapshotResolver
    lifecycle: ServerLifecycleManager

    @classmethod
    def create(
        cls,
        config: BuildConfig,
        console: Console,
        *,
        gateway: HetznerGateway | None = None,
        executor: RemoteExecutor | None = None,
        ssh_policy: RetryPolicy = SSH_READY,
        registration_policy: RetryPolicy = REGISTRATION,
        settle_delay: float = SETTLE_DELAY,
    ) -> "OrchestrationContext":
        gateway = gateway if gateway is not None else HetznerGateway(config.token)
        executor = executor if executor is not None else RemoteExecutor(config.ssh_private_key)
        resolver = SnapshotResolver(
            gateway,
            executor,
            console,
            prefix=config.snapshot_prefix,
            base_image=config.image,
            use_snapshot=config.use_snapshot,
            ssh_policy=ssh_policy,
        )
        lifecycle = ServerLifecycleManager(
            gateway,
            executor,
            resolver,
            config,
            console,
            ssh_policy=ssh_policy,
            registration_policy=registration_policy,
            settle_delay=settle_delay,
        )
        return cls(
            config=config,
            console=console,
            gateway=gateway,
            executor=executor,
            resolver=resolver,
            lifecycle=lifecycle,
        )

    @property
    def guardian(self) -> CleanupGuardian:
        return self.lifecycle.guardian


def _address(instance: ManagedInstance) -> str:
    if instance.address is None:
        raise TransportError("Server has no address", arch=instance.arch.value)
    return instance.address


@dataclass(slots=True)
class BuildReport:
    runs: dict[Architecture, BuildRun] = field(default_factory=dict)
    artifacts: list[ArtifactRecord] = field(default_factory=list)
    log_dir: Path | None = None

    @property
    def failed(self) -> list[Architecture]:
        return [arch for arch, run in self.runs.items() if not run.succeeded]


class BuildCoordinator:
    def __init__(self, ctx: OrchestrationContext) -> None:
        self.ctx = ctx
        self.instances: dict[Architecture, ManagedInstance] = {}
        self.report = BuildReport()

    @property
    def console(self) -> Console:
        return self.ctx.console

    async def provision(self, target: BuildTarget) -> ManagedInstance:
        instance = await self.ctx.lifecycle.provision(target)
        self.instances[target.arch] = instance
        return instance

    def _using_snapshot(self, arch: Architecture) -> bool:
        return self.ctx.lifecycle.using_snapshot.get(arch, False)

    # -------------------- phases -------------------- #

    async def upload_credential(self, instance: ManagedInstance, console: Console) -> None:
        # the private key lets the server clone the repository over SSH
        console.info(f"[{instance.arch}] Copying SSH key to server for GitHub access...")
        address = _address(instance)
        await self.ctx.executor.upload(
            address,
            self.ctx.config.ssh_private_key,
            REMOTE_CREDENTIAL_PATH,
            mode=0o600,
        )

    async def run_setup(self, instance: ManagedInstance, console: Console) -> None:
        arch = instance.arch
        address = _address(instance)
        console.info(f"[{arch}] Running setup script on server (this may take a while)...")
        await self.ctx.executor.run_script(
            address,
            "setup",
            render_setup_script(self.ctx.config),
            sink=lambda line: console.always(f"[{arch}] {line}"),
            arch=arch.value,
        )
        console.success(f"[{arch}] Setup completed on remote server")

    async def run_build(self, instance: ManagedInstance, console: Console) -> None:
        arch = instance.arch
        address = _address(instance)
        console.info(f"[{arch}] Running build script on server (this may take a while)...")
        await self.ctx.executor.run_script(
            address,
            "build",
            render_build_script(self.ctx.config),
            sink=lambda line: console.always(f"[{arch}] {line}"),
            arch=arch.value,
        )
        console.success(f"[{arch}] Build completed on remote server")

    async def _build_phase(
        self,
        instance: ManagedInstance,
        run: BuildRun,
        console: Console,
    ) -> None:
        arch = instance.arch
        console.info(f"[{arch}] Starting build on remote server...")
        try:
            await self.upload_credential(instance, console)
            if run.using_snapshot:
                console.info(f"[{arch}] Using cached snapshot, skipping setup...")
            else:
                await self.run_setup(instance, console)
            await self.run_build(instance, console)
        except HcloudBuildError as exc:
            exc.arch = exc.arch or arch.value
            exc.phase = exc.phase or "build"
            raise

    async def fetch(self, target: BuildTarget) -> ArtifactRecord:
        record = await fetch_artifact(
            self.ctx.executor,
            self.ctx.config,
            target,
            self.instances[target.arch],
            self.console,
        )
        self.report.artifacts.append(record)
        return record

    # -------------------- single architecture -------------------- #

    async def run_one(self, target: BuildTarget) -> BuildRun:
        instance = await self.provision(target)
        run = BuildRun(arch=target.arch, using_snapshot=self._using_snapshot(target.arch))
        self.report.runs[target.arch] = run
        try:
            await self._build_phase(instance, run, self.console)
        except BaseException as exc:
            run.finish(Outcome.FAILURE, exc)
            raise
        run.finish(Outcome.SUCCESS)
        return run

    # -------------------- many architectures -------------------- #

    async def run_many(
        self,
        targets: t.Sequence[BuildTarget],
        *,
        parallel: bool,
    ) -> dict[Architecture, BuildRun]:
        if not parallel or len(targets) < 2:
            runs: dict[Architecture, BuildRun] = {}
            for target in targets:
                runs[target.arch] = await self.run_one(target)
            return runs
        return await self._run_parallel(targets)

    async def _run_parallel(self, targets: t.Sequence[BuildTarget]) -> dict[Architecture, BuildRun]:
        console = self.console
        console.info("Phase 1: Creating servers for all architectures...")
        for target in targets:
            await self.provision(target)
        console.success("All servers created successfully")

        console.info("Phase 2: Running builds in parallel...")
        log_dir = Path(tempfile.mkdtemp(prefix="hcloud-build-"))
        self.report.log_dir = log_dir
        runs: dict[Architecture, BuildRun] = {}
        for target in targets:
            arch = target.arch
            log_path = log_dir / f"build-{arch.value}.log"
            log_path.touch()
            run = BuildRun(arch=arch, using_snapshot=self._using_snapshot(arch), log_path=log_path)
            runs[arch] = run
            self.report.runs[arch] = run

        async with LogAggregator([run.log_path for run in runs.values() if run.log_path], console):
            for target in targets:
                run = runs[target.arch]
                run.task = asyncio.create_task(
                    self._background_build(self.instances[target.arch], run),
                    name=f"build-{target.arch.value}",
                )
                console.info(f"[{target.arch}] Build started (log: {run.log_path})")
            console.info("All builds started. Streaming logs from all builds...")
            console.info("(Press Ctrl+C to cancel all builds)")
            console.always("=" * 78)
            await asyncio.gather(*(run.task for run in runs.values() if run.task is not None))
        console.always("=" * 78)

        for arch, run in runs.items():
            if run.succeeded:
                console.success(f"[{arch}] Build process completed successfully")
            else:
                console.error(f"[{arch}] Build process failed: {run.error}")
        return runs

    async def _background_build(self, instance: ManagedInstance, run: BuildRun) -> None:
        arch = instance.arch
        if run.log_path is None:
            raise RuntimeError(f"no log file for {arch} build")
        with run.log_path.open("a", encoding="utf-8") as handle:
            log_console = Console(handle, color=False)
            log_console.always(f"[{arch}] ========== Starting build ==========")
            try:
                await self._build_phase(instance, run, log_console)
            except asyncio.CancelledError as exc:
                run.finish(Outcome.FAILURE, exc)
                raise
            except Exception as exc:  # noqa: BLE001
                log_console.always(f"[{arch}] {exc}")
                log_console.always(f"[{arch}] ========== BUILD FAILED ==========")
                run.finish(Outcome.FAILURE, exc)
                return
            log_console.always(f"[{arch}] ========== Build completed ==========")
            run.finish(Outcome.SUCCESS)

    # -------------------- entry points -------------------- #

    async def build(self, targets: t.Sequence[BuildTarget], *, parallel: bool) -> BuildReport:
        console = self.console
        if not parallel or len(targets) < 2:
            if len(targets) > 1:
                console.info("Using sequential build mode (set PARALLEL_BUILD=true for parallel)")
            for target in targets:
                console.info(f"========== Building for {target.arch} ==========")
                await self.run_one(target)
                await self.fetch(target)
                console.success(f"========== Completed {target.arch} build ==========")
            return self.report

        console.info(f"Using parallel build mode for {len(targets)} architectures")
        runs = await self.run_many(targets, parallel=True)

        console.info("Phase 3: Downloading artifacts...")
        fetch_failures: list[Architecture] = []
        for target in targets:
            if not runs[target.arch].succeeded:
                continue
            try:
                await self.fetch(target)
            except HcloudBuildError as exc:
                console.error(str(exc))
                fetch_failures.append(target.arch)

        failed = [arch.value for arch in self.report.failed + fetch_failures]
        if failed:
            log_paths = {
                arch.value: str(run.log_path) for arch, run in runs.items() if run.log_path
            }
            raise BuildFailed(
                f"One or more builds failed: {', '.join(failed)}",
                failed=failed,
                log_paths=log_paths,
            )
        console.success("All parallel builds completed successfully")
        if self.report.log_dir is not None:
            shutil.rmtree(self.report.log_dir, ignore_errors=True)
            self.report.log_dir = None
        return self.report

    async def create_snapshots(self, targets: t.Sequence[BuildTarget]) -> list[SnapshotRecord]:
        """Provision from the base image, install dependencies, capture, tear down."""
        records: list[SnapshotRecord] = []
        for target in targets:
            arch = target.arch
            self.console.info(f"========== Creating snapshot for {arch} ==========")
            instance = await self.provision(target)
            try:
                await self.upload_credential(instance, self.console)
                await self.run_setup(instance, self.console)
                record = await self.ctx.resolver.create_or_replace(arch, instance)
            except HcloudBuildError as exc:
                exc.arch = exc.arch or arch.value
                exc.phase = exc.phase or "snapshot"
                raise
            records.append(record)
            await self.ctx.guardian.release(instance)
            self.console.success(f"========== Snapshot created for {arch} ==========")
        return records
