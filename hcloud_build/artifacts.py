from __future__ import annotations

from ._types import Console
from .config import BuildConfig
from .errors import ArtifactNotFound, HcloudBuildError, TransportError
from .models import ArtifactRecord, BuildTarget, ManagedInstance, format_size
from .remote import RemoteExecutor

_KNOWN_OS = {"Linux": "linux", "Darwin": "darwin"}


def normalize_os(raw: str) -> str:
    """Map ``uname -s`` output to a lowercase token (linux, darwin, or lowercased raw)."""
    raw = raw.strip()
    return _KNOWN_OS.get(raw, raw.lower())


def artifact_name(binary: str, os_name: str, arch: str) -> str:
    return f"{binary}-{os_name}-{arch}"


async def fetch(
    executor: RemoteExecutor,
    config: BuildConfig,
    target: BuildTarget,
    instance: ManagedInstance,
    console: Console,
) -> ArtifactRecord:
    try:
        return await _fetch(executor, config, target, instance, console)
    except HcloudBuildError as exc:
        exc.arch = exc.arch or target.arch.value
        exc.phase = exc.phase or "fetch"
        raise


async def _fetch(
    executor: RemoteExecutor,
    config: BuildConfig,
    target: BuildTarget,
    instance: ManagedInstance,
    console: Console,
) -> ArtifactRecord:
    arch = target.arch
    if instance.address is None:
        raise TransportError("Server has no address")
    console.info(f"[{arch}] Downloading build artifacts...")
    config.artifact_dir.mkdir(parents=True, exist_ok=True)

    result = await executor.exec(instance.address, ["uname", "-s"])
    if not result.ok or not result.output.strip():
        raise TransportError(f"could not determine remote OS (exit code {result.exit_code})")
    os_name = normalize_os(result.output.strip().splitlines()[-1])

    local_path = config.artifact_dir / artifact_name(config.binary_name, os_name, arch.value)
    await executor.download(instance.address, config.remote_binary_path, local_path)
    if not local_path.is_file():
        raise ArtifactNotFound(f"{config.remote_binary_path} was not downloaded")
    size = local_path.stat().st_size
    console.success(
        f"[{arch}] Artifact downloaded to {local_path} (size: {format_size(size)})"
    )
    return ArtifactRecord(arch=arch, os_name=os_name, path=local_path, size=size)
