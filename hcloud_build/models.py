from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from pathlib import Path


class Architecture(str, enum.Enum):
    AMD64 = "amd64"
    ARM64 = "arm64"

    def __str__(self) -> str:
        return self.value


class Outcome(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(slots=True, frozen=True)
class BuildTarget:
    arch: Architecture
    server_type: str
    location: str


@dataclass(slots=True, frozen=True)
class ManagedInstance:
    id: int
    name: str
    arch: Architecture
    address: str | None = None


@dataclass(slots=True, frozen=True)
class SnapshotRecord:
    arch: Architecture
    name: str
    image_id: int
    created: str | None = None
    size_gb: float | None = None


@dataclass(slots=True)
class BuildRun:
    arch: Architecture
    using_snapshot: bool
    log_path: Path | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)
    outcome: Outcome = Outcome.PENDING
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def finish(self, outcome: Outcome, error: BaseException | None = None) -> None:
        if self.outcome is not Outcome.PENDING:
            raise RuntimeError(
                f"build run for {self.arch} already finished with {self.outcome.value}"
            )
        if outcome is Outcome.PENDING:
            raise ValueError("a build run cannot finish as pending")
        self.outcome = outcome
        self.error = error


@dataclass(slots=True, frozen=True)
class ArtifactRecord:
    arch: Architecture
    os_name: str
    path: Path
    size: int

    @property
    def name(self) -> str:
        return self.path.name


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "K", "M", "G"):
        if value < 1024 or unit == "G":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}G"
