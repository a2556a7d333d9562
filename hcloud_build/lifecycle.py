from __future__ import annotations

import asyncio
import dataclasses

from ._types import Console
from .config import BuildConfig
from .errors import (
    ConnectivityTimeout,
    HcloudBuildError,
    ProviderError,
    ProvisionError,
    RegistrationTimeout,
)
from .guardian import CleanupGuardian
from .models import Architecture, BuildTarget, ManagedInstance
from .provider import HetznerGateway
from .remote import RemoteExecutor
from .retry import REGISTRATION, SSH_READY, RetryPolicy
from .snapshots import SnapshotResolver

SETTLE_DELAY = 2.0


class ServerLifecycleManager:
    """Creates build servers, waits until they are usable, and deletes them."""

    def __init__(
        self,
        gateway: HetznerGateway,
        executor: RemoteExecutor,
        resolver: SnapshotResolver,
        config: BuildConfig,
        console: Console,
        *,
        ssh_policy: RetryPolicy = SSH_READY,
        registration_policy: RetryPolicy = REGISTRATION,
        settle_delay: float = SETTLE_DELAY,
    ) -> None:
        self.gateway = gateway
        self.executor = executor
        self.resolver = resolver
        self.config = config
        self.console = console
        self.ssh_policy = ssh_policy
        self.registration_policy = registration_policy
        self.settle_delay = settle_delay
        self.guardian = CleanupGuardian(self.terminate, console)
        self.using_snapshot: dict[Architecture, bool] = {}

    async def provision(self, target: BuildTarget) -> ManagedInstance:
        try:
            return await self._provision(target)
        except HcloudBuildError as exc:
            exc.arch = exc.arch or target.arch.value
            exc.phase = exc.phase or "provision"
            raise

    async def _provision(self, target: BuildTarget) -> ManagedInstance:
        arch = target.arch
        name = self.config.server_name(arch)
        image, is_snapshot = await self.resolver.resolve_image(arch)
        self.using_snapshot[arch] = is_snapshot
        if is_snapshot:
            self.console.info(
                f"[{arch}] Using cached snapshot: {self.resolver.snapshot_name(arch)} (ID: {image})"
            )
        else:
            self.console.info(f"[{arch}] Using base image: {image}")

        self.console.info(
            f"[{arch}] Creating server '{name}' "
            f"(type: {target.server_type}, image: {image}, location: {target.location})..."
        )

        def _created(server_id: int) -> None:
            self.guardian.track(ManagedInstance(id=server_id, name=name, arch=arch))

        try:
            server_id = await self.gateway.create_instance(
                name=name,
                server_type=target.server_type,
                image=image,
                location=target.location,
                ssh_key=self.config.ssh_key_name,
                on_created=_created,
            )
        except ProviderError as exc:
            # the server may exist even though the create request failed
            await self._track_orphan(name, arch)
            raise ProvisionError(
                f"Failed to create server: {exc}", arch=arch.value, phase="provision"
            ) from exc
        instance = ManagedInstance(id=server_id, name=name, arch=arch)
        self.guardian.track(instance)

        await asyncio.sleep(self.settle_delay)

        async def _registered() -> ManagedInstance | None:
            info = await self.gateway.describe_instance(name)
            if info is None or info.address is None:
                return None
            return dataclasses.replace(instance, id=info.id, address=info.address)

        instance = await self.registration_policy.until(
            _registered,
            RegistrationTimeout,
            "Failed to get server details after creation",
            arch=arch.value,
            phase="provision",
        )
        self.guardian.track(instance)
        self.console.success(f"[{arch}] Server created: ID={instance.id}, IP={instance.address}")

        self.console.info(f"[{arch}] Waiting for SSH to be ready...")
        await self.wait_for_ssh(instance, phase="provision")
        self.console.success(f"[{arch}] SSH connection established")
        return instance

    async def wait_for_ssh(self, instance: ManagedInstance, *, phase: str) -> None:
        address = instance.address
        if address is None:
            raise ConnectivityTimeout(
                "Server has no address", arch=instance.arch.value, phase=phase
            )

        async def _reachable() -> bool:
            return await self.executor.probe(address)

        await self.ssh_policy.until(
            _reachable,
            ConnectivityTimeout,
            "SSH connection timeout",
            arch=instance.arch.value,
            phase=phase,
        )

    async def terminate(self, instance: ManagedInstance) -> None:
        self.console.info(f"Cleaning up server {instance.name} (ID: {instance.id})...")
        try:
            await self.gateway.delete_instance(instance.id)
        except ProviderError as exc:
            self.console.error(f"Failed to delete server {instance.name}: {exc}")
            return
        self.console.success(f"Server {instance.name} deleted")

    async def _track_orphan(self, name: str, arch: Architecture) -> None:
        try:
            info = await self.gateway.describe_instance(name)
        except ProviderError:
            return
        if info is not None:
            self.guardian.track(
                ManagedInstance(id=info.id, name=name, arch=arch, address=info.address)
            )
