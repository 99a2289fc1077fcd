"""Interactive prompt shown when the user pauses the daemon."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import rich_click as click

from buildwatch.daemon.wait import DaemonQuit, WaitOutcome

if TYPE_CHECKING:
    from buildwatch.daemon.watcher import ChangeWatchDaemon

_HELP_LINES = (
    "run, r      rerun the build now",
    "watch, w    resume watching for changes (default)",
    "ignored, i  list patterns the watcher ignores",
    "help, h     show this help",
    "quit, q     stop the daemon",
)


class DaemonPrompt:
    """Reads commands until the user reruns, resumes or quits."""

    def __init__(
        self,
        daemon: ChangeWatchDaemon,
        *,
        read: Callable[[], str] | None = None,
        echo: Callable[[str], None] = click.echo,
    ) -> None:
        self._daemon = daemon
        self._read = read or _read_command
        self._echo = echo

    def __call__(self) -> WaitOutcome:
        while True:
            command = self._read().strip().lower()
            if command in {"", "watch", "w"}:
                return WaitOutcome.RESUME
            if command in {"run", "r"}:
                return WaitOutcome.RERUN
            if command in {"quit", "q", "exit"}:
                raise DaemonQuit()
            if command in {"ignored", "i"}:
                for pattern in self._daemon.ignored():
                    self._echo(f"  {pattern}")
                continue
            if command in {"help", "h", "?"}:
                for line in _HELP_LINES:
                    self._echo(line)
                continue
            self._echo(f"Unknown command {command!r}; type 'help' for a list.")


def _read_command() -> str:
    return click.prompt("buildwatch", default="", show_default=False, prompt_suffix="> ")
