"""
Build Convex backend binaries on ephemeral Hetzner Cloud servers.

The flow:
1. Register the local SSH public key with Hetzner Cloud
2. Boot one server per target architecture (from a cached snapshot when one exists)
3. Install dependencies (fresh images only), clone the repository and build
4. Download the binaries into the artifact directory
5. Delete every server, whatever happened

Examples:
uv run --env-file .env hcloud-build
uv run --env-file .env hcloud-build --create-snapshot
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import signal
import sys
import textwrap
import typing as t

from ._types import Colors, Console
from .builder import BuildCoordinator, BuildReport, OrchestrationContext
from .config import BuildConfig
from .errors import BuildFailed, HcloudBuildError, PrerequisiteError
from .models import Architecture, format_size

ContextFactory = t.Callable[[BuildConfig, Console], OrchestrationContext]

ENVIRONMENT_HELP = textwrap.dedent(
    """\
    Environment Variables (a .env file in the working directory is loaded too):
      HCLOUD_TOKEN         Hetzner Cloud API token (required)
      TARGET_ARCHS         Target architectures: "amd64", "arm64", "all" or a list (default: all)
      PARALLEL_BUILD       Enable parallel builds: "true" or "false" (default: true)
      USE_SNAPSHOT         Use cached snapshots if available (default: true)
      SNAPSHOT_PREFIX      Prefix for snapshot names (default: convex-build-env)
      BUILD_PROFILE        Cargo build profile (default: release)
      BRANCH               Git branch to build (default: main)
      REPO_URL             Git repository URL
      ARTIFACT_DIR         Directory for build artifacts (default: ./build-artifacts)
      IMAGE                Base image for fresh servers (default: ubuntu-24.04)
      SERVER_TYPE_AMD64    Hetzner server type for amd64 (default: ccx33)
      SERVER_TYPE_ARM64    Hetzner server type for arm64 (default: cax31)
      LOCATION             Hetzner location for amd64 builds (default: nbg1)
      LOCATION_ARM         Hetzner location for arm64 builds (default: nbg1)
      SSH_KEY_NAME         Name of the SSH key in Hetzner Cloud (default: convex-build-key)
      SSH_PRIVATE_KEY      Private key used for SSH and git (default: ~/.ssh/id_ed25519 or id_rsa)
      SSH_PUBLIC_KEY       Public key registered with Hetzner (default: private key + .pub)
      BINARY_NAME          Binary produced by the build (default: convex-local-backend)
      CARGO_PACKAGE        Cargo package to build (default: local_backend)
      NODE_VERSION         Node.js major version (default: from .nvmrc, else 20)

    Examples:
      # First time: create snapshots for faster future builds
      hcloud-build --create-snapshot

      # Normal build (uses snapshots if available)
      hcloud-build

      # Build without using snapshots
      USE_SNAPSHOT=false hcloud-build

      # Build only for amd64
      TARGET_ARCHS=amd64 hcloud-build

      # List existing snapshots
      hcloud-build --list-snapshots
    """
)


def parse_args(argv: t.Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="hcloud-build",
        description="Build on ephemeral Hetzner Cloud servers with snapshot caching",
        epilog=ENVIRONMENT_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--create-snapshot",
        dest="command",
        action="store_const",
        const="create-snapshot",
        help="Create/update build environment snapshots",
    )
    group.add_argument(
        "--list-snapshots",
        dest="command",
        action="store_const",
        const="list-snapshots",
        help="List existing build environment snapshots",
    )
    group.add_argument(
        "--delete-snapshots",
        dest="command",
        action="store_const",
        const="delete-snapshots",
        help="Delete all build environment snapshots",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only print warnings, errors, build output and the summary",
    )
    parser.set_defaults(command="build")
    return parser.parse_args(argv)


def check_prerequisites(config: BuildConfig, console: Console) -> None:
    console.info("Checking prerequisites...")
    if not config.token:
        raise PrerequisiteError(
            "HCLOUD_TOKEN is not set. Create an API token in the Hetzner Cloud console."
        )
    if not config.ssh_public_key.expanduser().is_file():
        raise PrerequisiteError(
            f"No SSH public key found at {config.ssh_public_key}. "
            "Please generate one with 'ssh-keygen'."
        )
    if not config.ssh_private_key.expanduser().is_file():
        raise PrerequisiteError(f"No SSH private key found at {config.ssh_private_key}")
    console.success("Prerequisites check passed")


async def setup_ssh_key(ctx: OrchestrationContext) -> None:
    config = ctx.config
    ctx.console.info("Setting up SSH key in hcloud...")
    created = await ctx.gateway.ensure_ssh_key(config.ssh_key_name, config.ssh_public_key)
    if created:
        ctx.console.success(f"SSH key uploaded from {config.ssh_public_key}")
    else:
        ctx.console.info(f"SSH key '{config.ssh_key_name}' already exists in hcloud")


# -------------------- commands -------------------- #


async def cmd_build(ctx: OrchestrationContext) -> BuildReport:
    config = ctx.config
    console = ctx.console
    console.banner("Hetzner Cloud Build for Convex Backend")
    console.info(f"Target architectures: {' '.join(a.value for a in config.target_archs)}")
    console.info(f"Parallel build: {str(config.parallel_build).lower()}")
    console.info(f"Use snapshots: {str(config.use_snapshot).lower()}")
    await setup_ssh_key(ctx)
    coordinator = BuildCoordinator(ctx)
    try:
        report = await coordinator.build(config.targets(), parallel=config.parallel_build)
    except BuildFailed:
        _print_artifacts(coordinator.report, console)
        raise
    print_summary(report, ctx)
    return report


async def cmd_create_snapshot(ctx: OrchestrationContext) -> None:
    console = ctx.console
    console.banner("Creating Build Environment Snapshots")
    await setup_ssh_key(ctx)
    targets = ctx.config.targets()
    console.info(
        f"Creating build environment snapshots for: {' '.join(target.arch.value for target in targets)}"
    )
    coordinator = BuildCoordinator(ctx)
    records = await coordinator.create_snapshots(targets)
    console.banner("SNAPSHOTS CREATED", color=Colors.GREEN)
    console.always("Created snapshots:")
    for record in records:
        console.always(f"  - {record.name} (ID: {record.image_id})")
    console.always("")
    console.always("Future builds will use these snapshots automatically.")
    console.always("Use USE_SNAPSHOT=false to force fresh builds.")


async def cmd_list_snapshots(ctx: OrchestrationContext) -> int:
    console = ctx.console
    console.info("Listing build environment snapshots...")
    records = await ctx.resolver.list_snapshots()
    console.always("")
    console.always(f"Snapshots with prefix '{ctx.config.snapshot_prefix}':")
    console.always("=" * 42)
    if not records:
        console.always("  No snapshots found.")
        console.always("")
        console.always("Run with --create-snapshot to create build environment snapshots.")
        return 0
    seen: set[Architecture] = set()
    for record in records:
        if record.arch in seen:
            console.warn(f"Duplicate snapshot for {record.arch}: only one is used by builds")
        seen.add(record.arch)
        size = f"{record.size_gb}GB" if record.size_gb is not None else "unknown"
        console.always(f"  - {record.name}")
        console.always(f"    ID: {record.image_id}")
        console.always(f"    Created: {record.created or 'unknown'}")
        console.always(f"    Size: {size}")
        console.always("")
    return len(records)


async def cmd_delete_snapshots(ctx: OrchestrationContext) -> int:
    console = ctx.console
    console.info("Deleting all build environment snapshots...")
    total = 0
    for arch in Architecture:
        name = ctx.resolver.snapshot_name(arch)
        deleted = await ctx.resolver.delete(arch)
        if deleted:
            console.success(f"Deleted: {name}")
        else:
            console.info(f"Snapshot not found: {name}")
        total += deleted
    console.success("Snapshot cleanup complete")
    return total


COMMANDS: dict[str, t.Callable[[OrchestrationContext], t.Awaitable[object]]] = {
    "build": cmd_build,
    "create-snapshot": cmd_create_snapshot,
    "list-snapshots": cmd_list_snapshots,
    "delete-snapshots": cmd_delete_snapshots,
}


# -------------------- reporting -------------------- #


def _print_artifacts(report: BuildReport, console: Console) -> None:
    if not report.artifacts:
        return
    console.always("Built artifacts:")
    for artifact in report.artifacts:
        console.always(f"  - {artifact.name} ({format_size(artifact.size)})")


def print_summary(report: BuildReport, ctx: OrchestrationContext) -> None:
    config = ctx.config
    console = ctx.console
    console.always("")
    console.banner("BUILD COMPLETE", color=Colors.GREEN)
    console.always(f"Artifact directory: {config.artifact_dir}")
    console.always(f"Build profile: {config.build_profile}")
    console.always(f"Branch: {config.branch}")
    console.always("")
    _print_artifacts(report, console)
    console.always("")
    console.always("Snapshot usage:")
    for arch, run in report.runs.items():
        if run.using_snapshot:
            console.always(f"  - {arch}: used cached snapshot (fast build)")
        else:
            console.always(f"  - {arch}: fresh build (no snapshot)")
    console.always("=" * 46)


# -------------------- entry points -------------------- #


async def run(
    command: str,
    config: BuildConfig,
    console: Console,
    *,
    context_factory: ContextFactory = OrchestrationContext.create,
) -> int:
    """Run one command and return the process exit code."""
    try:
        check_prerequisites(config, console)
    except PrerequisiteError as exc:
        console.error(str(exc))
        return 1

    if command == "create-snapshot":
        # captures always start from the base image
        config = dataclasses.replace(config, use_snapshot=False)
    ctx = context_factory(config, console)
    try:
        async with ctx.guardian:
            await COMMANDS[command](ctx)
    except BuildFailed as exc:
        console.error(f"{exc}. Check logs above for details.")
        console.always("")
        console.always("Log files:")
        for arch, path in exc.log_paths.items():
            console.always(f"  - {arch}: {path}")
        return 1
    except HcloudBuildError as exc:
        console.error(str(exc))
        return 1
    finally:
        ctx.executor.close()
        await ctx.gateway.aclose()
    return 0


async def run_with_signals(coro: t.Awaitable[int], console: Console) -> int:
    """Turn SIGINT/SIGTERM into cancellation so scoped cleanup runs before exit."""
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    received: list[int] = []

    def _on_signal(signum: int) -> None:
        if received:
            console.warn(f"Received signal {signum}; cleanup already in progress")
            return
        received.append(signum)
        console.warn(f"Received signal {signum}; cleaning up...")
        if main_task is not None:
            main_task.cancel()

    installed: list[int] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _on_signal, signum)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)
    try:
        return await coro
    except asyncio.CancelledError:
        if not received:
            raise
        return 128 + received[0]
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def main(argv: t.Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    console = Console()
    console.quiet = args.quiet
    try:
        config = BuildConfig.from_env()
    except PrerequisiteError as exc:
        console.error(str(exc))
        sys.exit(1)
    try:
        code = asyncio.run(run_with_signals(run(args.command, config, console), console))
    except KeyboardInterrupt:
        code = 128 + signal.SIGINT
    sys.exit(code)


if __name__ == "__main__":
    main()
