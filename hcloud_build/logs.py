from __future__ import annotations

import asyncio
import codecs
import typing as t
from pathlib import Path

from ._types import Console

RELAY_INTERVAL = 0.25
CHUNK_SIZE = 64 * 1024


class LogAggregator:
    """Relays appended content of several build logs to one console, like ``tail -f``."""

    def __init__(
        self,
        paths: t.Iterable[Path],
        console: Console,
        *,
        interval: float = RELAY_INTERVAL,
    ) -> None:
        self._offsets: dict[Path, int] = {Path(path): 0 for path in paths}
        self._decoders = {
            path: codecs.getincrementaldecoder("utf-8")("replace") for path in self._offsets
        }
        self._console = console
        self._interval = interval
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def _relay_once(self) -> int:
        relayed = 0
        for path, offset in self._offsets.items():
            try:
                with path.open("rb") as handle:
                    handle.seek(offset)
                    while chunk := handle.read(CHUNK_SIZE):
                        self._console.write(self._decoders[path].decode(chunk))
                        offset += len(chunk)
                        relayed += len(chunk)
            except FileNotFoundError:
                continue
            except OSError as exc:
                self._console.warn(f"log relay for {path} failed: {exc}")
                continue
            self._offsets[path] = offset
        return relayed

    async def _run(self) -> None:
        while not self._stop.is_set():
            self._relay_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        self._relay_once()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop relaying after draining everything already written."""
        self._stop.set()
        if self._task is None:
            self._relay_once()
            return
        task, self._task = self._task, None
        await task

    async def __aenter__(self) -> "LogAggregator":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
