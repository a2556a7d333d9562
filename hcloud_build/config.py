from __future__ import annotations

import os
import time
import typing as t
from dataclasses import dataclass, field
from pathlib import Path

import dotenv

from .errors import ConfigurationError
from .models import Architecture, BuildTarget

DEFAULT_NODE_VERSION = "20"
REMOTE_BUILD_ROOT = "/build"
REMOTE_CREDENTIAL_PATH = "/root/.ssh/id_rsa"
SSH_KEY_CANDIDATES = ("id_ed25519", "id_rsa")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be 'true' or 'false', got {value!r}")


def parse_target_archs(value: str) -> tuple[Architecture, ...]:
    """Expand TARGET_ARCHS: ``all``, a single arch, or a comma/space separated list."""
    raw = value.strip().lower()
    if raw in ("", "all"):
        return (Architecture.AMD64, Architecture.ARM64)
    archs: list[Architecture] = []
    for token in raw.replace(",", " ").split():
        try:
            arch = Architecture(token)
        except ValueError:
            raise ConfigurationError(f"Unknown architecture: {token}") from None
        if arch not in archs:
            archs.append(arch)
    if not archs:
        raise ConfigurationError(f"No architectures selected by TARGET_ARCHS={value!r}")
    return tuple(archs)


def read_node_version(nvmrc: Path = Path(".nvmrc")) -> str:
    # major version only, e.g. "20" from "v20.19.5"
    if not nvmrc.is_file():
        return DEFAULT_NODE_VERSION
    text = nvmrc.read_text().strip().lstrip("v")
    major = text.split(".", 1)[0]
    return major or DEFAULT_NODE_VERSION


def _default_key(ssh_dir: Path, *, public: bool) -> Path:
    suffix = ".pub" if public else ""
    for name in SSH_KEY_CANDIDATES:
        candidate = ssh_dir / f"{name}{suffix}"
        if candidate.is_file():
            return candidate
    return ssh_dir / f"{SSH_KEY_CANDIDATES[-1]}{suffix}"


@dataclass(slots=True, frozen=True)
class BuildConfig:
    token: str = ""
    image: str = "ubuntu-24.04"
    location: str = "nbg1"
    location_arm: str = "nbg1"
    ssh_key_name: str = "convex-build-key"
    repo_url: str = "git@github.com:ozanturksever/convex-backend.git"
    branch: str = "main"
    build_profile: str = "release"
    artifact_dir: Path = Path("./build-artifacts")
    target_archs: tuple[Architecture, ...] = (Architecture.AMD64, Architecture.ARM64)
    parallel_build: bool = True
    use_snapshot: bool = True
    snapshot_prefix: str = "convex-build-env"
    server_types: dict[Architecture, str] = field(
        default_factory=lambda: {Architecture.AMD64: "ccx33", Architecture.ARM64: "cax31"}
    )
    server_name_prefix: str = field(default_factory=lambda: f"convex-build-{int(time.time())}")
    binary_name: str = "convex-local-backend"
    cargo_package: str = "local_backend"
    node_version: str = DEFAULT_NODE_VERSION
    ssh_private_key: Path = Path("~/.ssh/id_rsa")
    ssh_public_key: Path = Path("~/.ssh/id_rsa.pub")

    @classmethod
    def from_env(
        cls,
        env: t.Mapping[str, str] | None = None,
        *,
        load_dotenv: bool = True,
    ) -> "BuildConfig":
        if env is None:
            if load_dotenv:
                dotenv.load_dotenv()
            env = os.environ

        def get(name: str, default: str) -> str:
            value = env.get(name)
            return value if value else default

        ssh_dir = Path(get("SSH_DIR", str(Path.home() / ".ssh"))).expanduser()
        private_key = env.get("SSH_PRIVATE_KEY")
        public_key = env.get("SSH_PUBLIC_KEY")
        return cls(
            token=env.get("HCLOUD_TOKEN", ""),
            image=get("IMAGE", "ubuntu-24.04"),
            location=get("LOCATION", "nbg1"),
            location_arm=get("LOCATION_ARM", "nbg1"),
            ssh_key_name=get("SSH_KEY_NAME", "convex-build-key"),
            repo_url=get("REPO_URL", "git@github.com:ozanturksever/convex-backend.git"),
            branch=get("BRANCH", "main"),
            build_profile=get("BUILD_PROFILE", "release"),
            artifact_dir=Path(get("ARTIFACT_DIR", "./build-artifacts")),
            target_archs=parse_target_archs(get("TARGET_ARCHS", "all")),
            parallel_build=_parse_bool("PARALLEL_BUILD", get("PARALLEL_BUILD", "true")),
            use_snapshot=_parse_bool("USE_SNAPSHOT", get("USE_SNAPSHOT", "true")),
            snapshot_prefix=get("SNAPSHOT_PREFIX", "convex-build-env"),
            server_types={
                Architecture.AMD64: get("SERVER_TYPE_AMD64", "ccx33"),
                Architecture.ARM64: get("SERVER_TYPE_ARM64", "cax31"),
            },
            server_name_prefix=get("SERVER_NAME_PREFIX", f"convex-build-{int(time.time())}"),
            binary_name=get("BINARY_NAME", "convex-local-backend"),
            cargo_package=get("CARGO_PACKAGE", "local_backend"),
            node_version=get("NODE_VERSION", "") or read_node_version(),
            ssh_private_key=(
                Path(private_key).expanduser()
                if private_key
                else _default_key(ssh_dir, public=False)
            ),
            ssh_public_key=(
                Path(public_key).expanduser()
                if public_key
                else _default_key(ssh_dir, public=True)
            ),
        )

    def location_for(self, arch: Architecture) -> str:
        # ARM servers are not offered in every datacenter
        return self.location_arm if arch is Architecture.ARM64 else self.location

    def target(self, arch: Architecture) -> BuildTarget:
        return BuildTarget(
            arch=arch,
            server_type=self.server_types[arch],
            location=self.location_for(arch),
        )

    def targets(self) -> list[BuildTarget]:
        return [self.target(arch) for arch in self.target_archs]

    def server_name(self, arch: Architecture) -> str:
        return f"{self.server_name_prefix}-{arch.value}"

    @property
    def remote_binary_path(self) -> str:
        return f"{REMOTE_BUILD_ROOT}/target/{self.build_profile}/{self.binary_name}"
