"""In-memory doubles for the Hetzner API, the gateway and the SSH executor."""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
from pathlib import Path

import httpx

from hcloud_build._types import Console
from hcloud_build.builder import OrchestrationContext
from hcloud_build.errors import ArtifactNotFound, ProviderError, RemoteScriptError, TransportError
from hcloud_build.provider import ImageInfo, InstanceInfo
from hcloud_build.remote import ExecResult
from hcloud_build.retry import RetryPolicy


class FakeApi:
    """Routes requests to canned JSON bodies keyed by (method, path)."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, status: int = 200, body: dict | None = None) -> None:
        response = httpx.Response(status, json=body) if body is not None else httpx.Response(status)
        self.routes.setdefault((method, path), []).append(response)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path.removeprefix("/v1"))
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(404, json={"error": {"code": "not_found", "message": "no route"}})
        return queue.pop(0) if len(queue) > 1 else queue[0]


class FakeGateway:
    """Records every call and keeps servers and images in dictionaries."""

    def __init__(self) -> None:
        self._ids = itertools.count(100)
        self._clock = itertools.count(1)
        self.servers: dict[int, InstanceInfo] = {}
        self.images: dict[int, ImageInfo] = {}
        self.created: list[str] = []
        self.deleted: list[int] = []
        self.power_log: list[tuple[str, int]] = []
        self.ssh_keys: dict[str, str] = {}
        self.fail_create: set[str] = set()
        self.fail_delete: set[int] = set()
        self.unregistered: set[str] = set()
        self.booted_images: list[str] = []
        self.closed = False

    def add_image(self, description: str, labels: dict[str, str] | None = None) -> ImageInfo:
        image_id = next(self._ids)
        image = ImageInfo(
            id=image_id,
            description=description,
            labels=dict(labels or {}),
            created=f"2026-01-01T00:00:{next(self._clock):02d}+00:00",
            image_size=4.5,
            type="snapshot",
        )
        self.images[image_id] = image
        return image

    async def ensure_ssh_key(self, name: str, public_key_path: Path) -> bool:
        if name in self.ssh_keys:
            return False
        self.ssh_keys[name] = public_key_path.read_text().strip()
        return True

    async def create_instance(
        self, *, name, server_type, image, location, ssh_key, on_created=None
    ) -> int:
        await asyncio.sleep(0)
        if name in self.fail_create:
            raise ProviderError(f"server type {server_type} unavailable", status_code=412)
        server_id = next(self._ids)
        self.created.append(name)
        address = None if name in self.unregistered else f"10.0.0.{server_id % 250}"
        self.servers[server_id] = InstanceInfo(id=server_id, name=name, address=address)
        if on_created is not None:
            on_created(server_id)
        self.booted_images.append(image)
        return server_id

    async def describe_instance(self, name: str) -> InstanceInfo | None:
        for info in self.servers.values():
            if info.name == name:
                return info
        return None

    async def delete_instance(self, server_id: int) -> None:
        await asyncio.sleep(0)
        if server_id in self.fail_delete:
            raise ProviderError("server is locked", status_code=423)
        self.deleted.append(server_id)
        self.servers.pop(server_id, None)

    async def power_off(self, server_id: int) -> None:
        self.power_log.append(("off", server_id))

    async def power_on(self, server_id: int) -> None:
        self.power_log.append(("on", server_id))

    async def create_image(self, server_id: int, *, description: str, labels=None) -> int | None:
        return self.add_image(description, labels).id

    async def list_images(self, *, label_selector: str | None = None) -> list[ImageInfo]:
        images = list(self.images.values())
        if label_selector:
            key, _, value = label_selector.partition("=")
            images = [image for image in images if image.labels.get(key) == value]
        return images

    async def describe_image(self, image_id: int) -> ImageInfo:
        return self.images[image_id]

    async def update_image(self, image_id: int, *, description=None, labels=None) -> ImageInfo:
        image = self.images[image_id]
        changes = {}
        if description is not None:
            changes["description"] = description
        if labels is not None:
            changes["labels"] = labels
        image = dataclasses.replace(image, **changes)
        self.images[image_id] = image
        return image

    async def delete_image(self, image_id: int) -> None:
        if image_id not in self.images:
            raise ProviderError("image not found", status_code=404, code="not_found")
        del self.images[image_id]

    async def aclose(self) -> None:
        self.closed = True


class FakeExecutor:
    def __init__(self) -> None:
        self.scripts: list[tuple[str | None, str]] = []
        self.uploads: list[tuple[str, str, int | None]] = []
        self.commands: list[str] = []
        self.failing: set[tuple[str, str]] = set()
        self.missing_artifacts: set[str] = set()
        self.broken_links: set[str] = set()
        self.unreachable: set[str] = set()
        self.uname = "Linux"
        self.closed = False

    async def probe(self, address: str) -> bool:
        return address not in self.unreachable

    async def exec(self, address: str, command, *, sink=None) -> ExecResult:
        if address in self.broken_links:
            raise TransportError(f"ssh root@{address} failed: Connection reset by peer")
        rendered = command if isinstance(command, str) else " ".join(command)
        self.commands.append(rendered)
        if rendered == "uname -s":
            return ExecResult(output=f"{self.uname}\n", exit_code=0)
        return ExecResult(output="", exit_code=0)

    async def run_script(self, address, name, body, *, sink=None, arch=None) -> ExecResult:
        await asyncio.sleep(0)
        self.scripts.append((arch, name))
        if sink is not None:
            sink(f"running {name}")
        if (arch, name) in self.failing:
            raise RemoteScriptError(
                f"{name} failed with exit code 101", exit_code=101, arch=arch, phase=name
            )
        return ExecResult(output=f"running {name}\n", exit_code=0)

    async def upload(self, address, local_path, remote_path, *, mode=None) -> None:
        self.uploads.append((address, remote_path, mode))

    async def download(self, address, remote_path, local_path: Path) -> None:
        if address in self.missing_artifacts:
            raise ArtifactNotFound(f"{address}:{remote_path} does not exist")
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(b"\x7fELF fake binary")

    def close(self) -> None:
        self.closed = True


FAST = RetryPolicy(attempts=3, interval=0)


def console_output(console: Console) -> str:
    return console.stream.getvalue()


def make_context(config, console, gateway, executor) -> OrchestrationContext:
    return OrchestrationContext.create(
        config,
        console,
        gateway=gateway,
        executor=executor,
        ssh_policy=FAST,
        registration_policy=FAST,
        settle_delay=0,
    )
