"""Indented code writer used by every backend and handler.

Usage:
    os = CodeStream()
    with os.block("if(id < 32)"):
        os.line("group->V[id] = 0;")
    text = os.getvalue()
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager


class CodeStream:
    """Accumulate lines of C-like code with brace-scoped indentation."""

    def __init__(self, indent: str = "    ") -> None:
        self._indent = indent
        self._level = 0
        self._lines: list[str] = []

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def line(self, text: str = "") -> None:
        """Write one line (or several, split on newlines) at the current indent."""
        for part in text.split("\n"):
            self._lines.append(self._indent * self._level + part if part else "")

    def blank(self) -> None:
        self._lines.append("")

    def comment(self, text: str) -> None:
        self.line(f"// {text}")

    @contextmanager
    def scope(self, trailer: str = "") -> Iterator[CodeStream]:
        """Open ``{``, indent, and close with ``}`` plus an optional trailer."""
        self.line("{")
        self._level += 1
        try:
            yield self
        finally:
            self._level -= 1
            self.line("}" + trailer)

    @contextmanager
    def block(self, header: str, trailer: str = "") -> Iterator[CodeStream]:
        """Write ``header`` followed by a braced, indented body."""
        self.line(header)
        with self.scope(trailer):
            yield self

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def extend(self, other: CodeStream) -> None:
        """Append another stream's lines at this stream's current indent."""
        for text in other._lines:
            self._lines.append(self._indent * self._level + text if text else "")

    def getvalue(self) -> str:
        return "\n".join(self._lines) + ("\n" if self._lines else "")

    def __str__(self) -> str:
        return self.getvalue()

    def __len__(self) -> int:
        return len(self._lines)
