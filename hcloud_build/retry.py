from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass

from .errors import HcloudBuildError

T = t.TypeVar("T")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded attempts at a fixed interval, ending in an explicit timeout error."""

    attempts: int
    interval: float

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")

    @property
    def ceiling(self) -> float:
        return self.attempts * self.interval

    async def until(
        self,
        check: t.Callable[[], t.Awaitable[T | None]],
        error: type[HcloudBuildError],
        message: str,
        *,
        arch: str | None = None,
        phase: str | None = None,
        on_retry: t.Callable[[int], None] | None = None,
    ) -> T:
        for attempt in range(1, self.attempts + 1):
            result = await check()
            if result:
                return result
            if attempt == self.attempts:
                break
            if on_retry is not None:
                on_retry(attempt)
            await asyncio.sleep(self.interval)
        raise error(
            f"{message} after {self.attempts} attempts ({self.ceiling:.0f}s)",
            arch=arch,
            phase=phase,
        )


SSH_READY = RetryPolicy(attempts=30, interval=5.0)
REGISTRATION = RetryPolicy(attempts=10, interval=2.0)
