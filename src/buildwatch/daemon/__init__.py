"""Watch-and-rebuild daemon."""

from buildwatch.daemon.manifest import IgnoreSet, manifest_name
from buildwatch.daemon.prompt import DaemonPrompt
from buildwatch.daemon.state import WatchSnapshot, WatchState
from buildwatch.daemon.wait import DaemonQuit, WaitController, WaitOutcome
from buildwatch.daemon.watcher import ChangeWatchDaemon

__all__ = [
    "ChangeWatchDaemon",
    "DaemonPrompt",
    "DaemonQuit",
    "IgnoreSet",
    "WaitController",
    "WaitOutcome",
    "WatchSnapshot",
    "WatchState",
    "manifest_name",
]
