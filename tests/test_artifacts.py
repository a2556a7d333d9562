from __future__ import annotations

import asyncio

import pytest

from hcloud_build.artifacts import artifact_name, fetch, normalize_os
from hcloud_build.errors import ArtifactNotFound, TransportError
from hcloud_build.models import Architecture, ManagedInstance


@pytest.mark.parametrize(
    "raw, expected",
    [("Linux", "linux"), ("Darwin\n", "darwin"), ("FreeBSD", "freebsd")],
)
def test_normalize_os(raw, expected):
    assert normalize_os(raw) == expected


def test_artifact_name():
    assert artifact_name("convex-local-backend", "linux", "arm64") == "convex-local-backend-linux-arm64"


class TestFetch:
    def _instance(self) -> ManagedInstance:
        return ManagedInstance(id=1, name="test-build-amd64", arch=Architecture.AMD64, address="10.0.0.1")

    def test_downloads_into_artifact_dir(self, config, executor, console):
        target = config.target(Architecture.AMD64)
        record = asyncio.run(fetch(executor, config, target, self._instance(), console))
        assert record.path == config.artifact_dir / "convex-local-backend-linux-amd64"
        assert record.path.is_file()
        assert record.size == record.path.stat().st_size
        assert record.os_name == "linux"

    def test_remote_os_drives_the_name(self, config, executor, console):
        executor.uname = "Darwin"
        target = config.target(Architecture.AMD64)
        record = asyncio.run(fetch(executor, config, target, self._instance(), console))
        assert record.name == "convex-local-backend-darwin-amd64"

    def test_missing_binary(self, config, executor, console):
        executor.missing_artifacts.add("10.0.0.1")
        target = config.target(Architecture.AMD64)
        with pytest.raises(ArtifactNotFound) as excinfo:
            asyncio.run(fetch(executor, config, target, self._instance(), console))
        assert excinfo.value.arch == "amd64"
        assert excinfo.value.phase == "fetch"

    def test_connection_loss_names_arch_and_phase(self, config, executor, console):
        executor.broken_links.add("10.0.0.1")
        target = config.target(Architecture.AMD64)
        with pytest.raises(TransportError) as excinfo:
            asyncio.run(fetch(executor, config, target, self._instance(), console))
        assert str(excinfo.value).startswith("[amd64] fetch: ssh root@10.0.0.1 failed")

    def test_kernel_name_is_queried_as_argv(self, config, executor, console):
        sent = []
        original = executor.exec

        async def recording_exec(address, command, *, sink=None):
            sent.append(command)
            return await original(address, command, sink=sink)

        executor.exec = recording_exec
        asyncio.run(fetch(executor, config, config.target(Architecture.ARM64), self._instance(), console))
        assert sent == [["uname", "-s"]]
