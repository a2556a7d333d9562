"""
Snapshot naming by convention.

Hetzner images have no user-settable name, so a snapshot's identity is the
string ``<prefix>-<arch>`` written into its description (and a ``name``
label). Renaming happens after the capture finishes; until then the new image
carries only the capture description. Two captures of the same architecture
must never run at the same time.
"""

from __future__ import annotations

import typing as t

from ._types import Console
from .errors import (
    AmbiguousSnapshotError,
    ConnectivityTimeout,
    ProviderError,
    SnapshotCreationError,
    TransportError,
)
from .models import Architecture, ManagedInstance, SnapshotRecord
from .provider import HetznerGateway, ImageInfo
from .remote import RemoteExecutor
from .retry import SSH_READY, RetryPolicy


class SnapshotResolver:
    def __init__(
        self,
        gateway: HetznerGateway,
        executor: RemoteExecutor,
        console: Console,
        *,
        prefix: str,
        base_image: str,
        use_snapshot: bool = True,
        ssh_policy: RetryPolicy = SSH_READY,
    ) -> None:
        self.gateway = gateway
        self.executor = executor
        self.console = console
        self.prefix = prefix
        self.base_image = base_image
        self.use_snapshot = use_snapshot
        self.ssh_policy = ssh_policy

    def snapshot_name(self, arch: Architecture) -> str:
        return f"{self.prefix}-{arch.value}"

    def capture_description(self, arch: Architecture) -> str:
        return f"{self.prefix} build environment for {arch.value}"

    def _record(self, arch: Architecture, image: ImageInfo) -> SnapshotRecord:
        return SnapshotRecord(
            arch=arch,
            name=self.snapshot_name(arch),
            image_id=image.id,
            created=image.created,
            size_gb=image.image_size,
        )

    async def _matching(self, arch: Architecture) -> list[ImageInfo]:
        name = self.snapshot_name(arch)
        images = await self.gateway.list_images()
        return [image for image in images if name in image.description]

    async def find(self, arch: Architecture) -> SnapshotRecord | None:
        matches = await self._matching(arch)
        if not matches:
            return None
        if len(matches) > 1:
            ids = sorted(image.id for image in matches)
            raise AmbiguousSnapshotError(
                f"{len(matches)} snapshots match '{self.snapshot_name(arch)}' "
                f"(IDs: {', '.join(map(str, ids))}); delete the stale ones with --delete-snapshots",
                image_ids=ids,
                arch=arch.value,
            )
        return self._record(arch, matches[0])

    async def resolve_image(self, arch: Architecture) -> tuple[str, bool]:
        if self.use_snapshot:
            record = await self.find(arch)
            if record is not None:
                # Hetzner accepts either an image name or its id
                return str(record.image_id), True
        return self.base_image, False

    async def list_snapshots(self, archs: t.Iterable[Architecture] = tuple(Architecture)) -> list[SnapshotRecord]:
        records: list[SnapshotRecord] = []
        images = await self.gateway.list_images()
        for arch in archs:
            name = self.snapshot_name(arch)
            for image in images:
                if name in image.description:
                    records.append(self._record(arch, image))
        return records

    async def delete(self, arch: Architecture) -> int:
        deleted = 0
        for image in await self._matching(arch):
            self.console.info(f"Deleting snapshot: {self.snapshot_name(arch)} (ID: {image.id})")
            try:
                await self.gateway.delete_image(image.id)
            except ProviderError as exc:
                if exc.status_code != 404:
                    raise
            deleted += 1
        return deleted

    async def _locate_capture(self, arch: Architecture, captured_id: int | None) -> ImageInfo | None:
        description = self.capture_description(arch)
        candidates = [
            image
            for image in await self.gateway.list_images(label_selector=f"arch={arch.value}")
            if image.description == description
        ]
        if captured_id is not None:
            for image in candidates:
                if image.id == captured_id:
                    return image
        if not candidates:
            return None
        return max(candidates, key=lambda image: (image.created or "", image.id))

    async def create_or_replace(self, arch: Architecture, instance: ManagedInstance) -> SnapshotRecord:
        name = self.snapshot_name(arch)
        address = instance.address
        self.console.info(f"[{arch}] Creating snapshot '{name}' from server...")

        self.console.info(f"[{arch}] Powering off server for snapshot...")
        if address is not None:
            try:
                await self.executor.exec(address, ["sync"])
            except TransportError as exc:
                self.console.warn(f"[{arch}] sync before power off failed: {exc}")
        await self.gateway.power_off(instance.id)

        for image in await self._matching(arch):
            self.console.info(f"[{arch}] Deleting existing snapshot (ID: {image.id})...")
            await self.gateway.delete_image(image.id)

        self.console.info(f"[{arch}] Creating snapshot (this may take a few minutes)...")
        captured_id = await self.gateway.create_image(
            instance.id,
            description=self.capture_description(arch),
            labels={"arch": arch.value},
        )
        image = await self._locate_capture(arch, captured_id)
        if image is None:
            raise SnapshotCreationError(
                "Failed to find created snapshot", arch=arch.value, phase="snapshot"
            )
        image = await self.gateway.update_image(
            image.id,
            description=name,
            labels={"arch": arch.value, "name": name},
        )
        self.console.success(f"[{arch}] Snapshot created: {name} (ID: {image.id})")

        self.console.info(f"[{arch}] Powering server back on...")
        await self.gateway.power_on(instance.id)
        self.console.info(f"[{arch}] Waiting for SSH to be ready...")
        if address is None:
            raise ConnectivityTimeout("Server has no address", arch=arch.value, phase="snapshot")

        async def _reachable() -> bool:
            return await self.executor.probe(address)

        await self.ssh_policy.until(
            _reachable,
            ConnectivityTimeout,
            "SSH connection timeout after snapshot",
            arch=arch.value,
            phase="snapshot",
        )
        self.console.success(f"[{arch}] Server back online")
        return self._record(arch, image)
