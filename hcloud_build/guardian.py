"""
Scoped teardown for every server created during one invocation.

The guardian is entered once around the whole invocation. Instances are
tracked as soon as the provider hands out an id; leaving the context (normal
return, exception or cancellation) terminates each of them exactly once.
"""

from __future__ import annotations

import typing as t

from ._types import Console
from .models import ManagedInstance

Terminator = t.Callable[[ManagedInstance], t.Awaitable[None]]


class CleanupGuardian:
    def __init__(self, terminate: Terminator, console: Console) -> None:
        self._terminate = terminate
        self._console = console
        self._instances: dict[int, ManagedInstance] = {}
        self._released: list[int] = []

    def track(self, instance: ManagedInstance) -> None:
        """Register ``instance``; re-tracking the same id refreshes its details."""
        self._instances[instance.id] = instance

    @property
    def tracked(self) -> list[ManagedInstance]:
        return list(self._instances.values())

    @property
    def released(self) -> list[int]:
        return list(self._released)

    async def release(self, instance: ManagedInstance) -> None:
        """Terminate one tracked instance now. Untracked ids are ignored."""
        instance = self._instances.get(instance.id, instance)
        if instance.id not in self._instances:
            return
        try:
            await self._terminate(instance)
        except Exception as exc:  # noqa: BLE001
            self._console.error(
                f"Failed to clean up server {instance.name} (ID: {instance.id}): {exc}"
            )
        finally:
            del self._instances[instance.id]
            self._released.append(instance.id)

    async def release_all(self) -> None:
        while self._instances:
            await self.release(next(iter(self._instances.values())))

    async def __aenter__(self) -> "CleanupGuardian":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        # the original exception, if any, keeps propagating
        await self.release_all()
