from __future__ import annotations

import sys
import typing as t

Command = t.Union[str, t.Sequence[str]]
LineSink = t.Callable[[str], None]


class Colors:
    RED = "\033[0;31m"
    GREEN = "\033[0;32m"
    YELLOW = "\033[1;33m"
    BLUE = "\033[0;34m"
    NC = "\033[0m"  # No Color


class Console:
    def __init__(self, stream: t.TextIO | None = None, *, color: bool | None = None) -> None:
        self.quiet = False
        self._stream = stream
        if color is None:
            color = self.stream.isatty() if hasattr(self.stream, "isatty") else False
        self._color = color

    @property
    def stream(self) -> t.TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def _tag(self, label: str, color: str) -> str:
        if not self._color:
            return f"[{label}]"
        return f"{color}[{label}]{Colors.NC}"

    def info(self, value: str) -> None:
        if not self.quiet:
            self.always(f"{self._tag('INFO', Colors.BLUE)} {value}")

    def success(self, value: str) -> None:
        if not self.quiet:
            self.always(f"{self._tag('SUCCESS', Colors.GREEN)} {value}")

    def warn(self, value: str) -> None:
        self.always(f"{self._tag('WARN', Colors.YELLOW)} {value}")

    def error(self, value: str) -> None:
        self.always(f"{self._tag('ERROR', Colors.RED)} {value}")

    def always(self, value: str) -> None:
        print(value, file=self.stream, flush=True)

    def write(self, chunk: str) -> None:
        """Write raw text without a trailing newline (used for relayed logs)."""
        self.stream.write(chunk)
        self.stream.flush()

    def banner(self, title: str, *, color: str | None = None) -> None:
        rule = "=" * 46
        if color and self._color:
            title = f"{color}{title}{Colors.NC}"
        self.always(rule)
        self.always(title)
        self.always(rule)
