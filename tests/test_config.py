from __future__ import annotations

from pathlib import Path

import pytest

from hcloud_build.config import BuildConfig, parse_target_archs, read_node_version
from hcloud_build.errors import ConfigurationError
from hcloud_build.models import Architecture


class TestTargetArchs:
    def test_all_expands_to_both(self):
        assert parse_target_archs("all") == (Architecture.AMD64, Architecture.ARM64)

    def test_single_architecture(self):
        assert parse_target_archs("arm64") == (Architecture.ARM64,)

    def test_custom_list_keeps_order_and_drops_duplicates(self):
        assert parse_target_archs("arm64, amd64 arm64") == (Architecture.ARM64, Architecture.AMD64)

    def test_unknown_architecture_is_rejected(self):
        with pytest.raises(ConfigurationError, match="riscv64"):
            parse_target_archs("amd64,riscv64")


class TestFromEnv:
    def test_defaults(self, tmp_path: Path):
        config = BuildConfig.from_env({"HCLOUD_TOKEN": "abc", "SSH_DIR": str(tmp_path)})
        assert config.token == "abc"
        assert config.image == "ubuntu-24.04"
        assert config.target_archs == (Architecture.AMD64, Architecture.ARM64)
        assert config.parallel_build is True
        assert config.use_snapshot is True
        assert config.snapshot_prefix == "convex-build-env"
        assert config.server_types[Architecture.AMD64] == "ccx33"
        assert config.server_types[Architecture.ARM64] == "cax31"
        assert config.artifact_dir == Path("./build-artifacts")

    def test_overrides(self, tmp_path: Path):
        config = BuildConfig.from_env(
            {
                "TARGET_ARCHS": "arm64",
                "PARALLEL_BUILD": "false",
                "USE_SNAPSHOT": "false",
                "SERVER_TYPE_ARM64": "cax41",
                "LOCATION_ARM": "fsn1",
                "SERVER_NAME_PREFIX": "ci-build",
                "NODE_VERSION": "22",
                "SSH_DIR": str(tmp_path),
            }
        )
        assert config.target_archs == (Architecture.ARM64,)
        assert config.parallel_build is False
        assert config.use_snapshot is False
        assert config.node_version == "22"
        target = config.target(Architecture.ARM64)
        assert target.server_type == "cax41"
        assert target.location == "fsn1"
        assert config.server_name(Architecture.ARM64) == "ci-build-arm64"

    def test_invalid_boolean(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="PARALLEL_BUILD"):
            BuildConfig.from_env({"PARALLEL_BUILD": "sometimes", "SSH_DIR": str(tmp_path)})

    def test_prefers_ed25519_key(self, tmp_path: Path):
        (tmp_path / "id_rsa.pub").write_text("ssh-rsa AAAA")
        (tmp_path / "id_ed25519.pub").write_text("ssh-ed25519 AAAA")
        (tmp_path / "id_ed25519").write_text("private")
        config = BuildConfig.from_env({"SSH_DIR": str(tmp_path)})
        assert config.ssh_public_key == tmp_path / "id_ed25519.pub"
        assert config.ssh_private_key == tmp_path / "id_ed25519"

    def test_remote_binary_path_follows_profile(self):
        config = BuildConfig(build_profile="dev", binary_name="server")
        assert config.remote_binary_path == "/build/target/dev/server"


class TestNodeVersion:
    def test_reads_major_version(self, tmp_path: Path):
        nvmrc = tmp_path / ".nvmrc"
        nvmrc.write_text("v20.19.5\n")
        assert read_node_version(nvmrc) == "20"

    def test_missing_file_uses_default(self, tmp_path: Path):
        assert read_node_version(tmp_path / ".nvmrc") == "20"
