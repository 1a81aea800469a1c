"""Listener interfaces through which the core reports what it is doing.

Installers narrate through an :class:`InstallListener`; the supervisor
reports per-project output and lifecycle through a :class:`ProcessListener`.
Both base classes are no-ops, so callers override only what they render.
"""

from __future__ import annotations

import sys
from typing import Optional, TextIO


class InstallListener:
    """Receives progress and log events from downloads and installs."""

    def on_progress(self, percent: Optional[float], status: str) -> None:
        pass

    def on_log(self, message: str, is_error: bool = False) -> None:
        pass


class ConsoleInstallListener(InstallListener):
    """Prints install narration to stderr (stdout carries the MCP protocol)."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream or sys.stderr

    def on_progress(self, percent: Optional[float], status: str) -> None:
        print(f"   ⬇️  {status}", file=self.stream)

    def on_log(self, message: str, is_error: bool = False) -> None:
        prefix = "❌ " if is_error else ""
        print(f"{prefix}{message}", file=self.stream)


class ProcessListener:
    """Receives events for one supervised start attempt.

    For a given attempt, ``on_exit`` is always the last call.
    """

    def on_output(self, line: str) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass

    def on_ready(self) -> None:
        pass

    def on_exit(self, exit_code: Optional[int]) -> None:
        pass
