"""Block until a debounced file change or a user keypress, whichever comes first."""

from __future__ import annotations

import logging
import os
import select
import shutil
import threading
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, TextIO

from buildwatch.daemon.state import is_within

if TYPE_CHECKING:
    from buildwatch.daemon.watcher import ChangeWatchDaemon

logger = logging.getLogger(__name__)


class WaitOutcome(str, Enum):
    """What the daemon loop does after a wait."""

    RERUN = "rerun"
    RESUME = "resume"


class DaemonQuit(Exception):
    """The user asked the daemon to quit."""


class CancelToken:
    """One-shot cancellation channel that ``select`` can wait on (a self-pipe)."""

    def __init__(self) -> None:
        self._read_fd, self._write_fd = os.pipe()
        self._lock = threading.Lock()
        self._set = False
        self._closed = False
        self.changetime: float | None = None

    def fileno(self) -> int:
        return self._read_fd

    def cancel(self, changetime: float | None) -> None:
        with self._lock:
            if self._set or self._closed:
                return
            self._set = True
            self.changetime = changetime
            os.write(self._write_fd, b"x")

    def is_set(self) -> bool:
        with self._lock:
            return self._set

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            os.close(self._read_fd)
            os.close(self._write_fd)


class DebounceTimer(threading.Thread):
    """Polls the watch state every half interval and fires the token once.

    Fires when a change newer than the last handled one has been followed by a
    full quiet interval. Owns no resources besides its stop event.
    """

    def __init__(self, daemon: ChangeWatchDaemon, interval: float, token: CancelToken) -> None:
        super().__init__(daemon=True, name="buildwatch-debounce")
        self._watch = daemon
        self._interval = interval
        self._token = token
        self._stop_event = threading.Event()
        self.error: Exception | None = None

    def run(self) -> None:
        try:
            while not self._stop_event.wait(self._interval * 0.5):
                snapshot = self._watch.snapshot()
                quiet_for = self._watch.clock() - snapshot.changetime
                if snapshot.pending and quiet_for >= self._interval:
                    self._token.cancel(snapshot.changetime)
                    return
        except Exception as error:  # noqa: BLE001
            self.error = error
            self._token.cancel(None)

    def stop(self) -> None:
        self._stop_event.set()
        self.join()


class WaitController:
    """Waits for a qualifying change or a keypress and decides what happens next."""

    def __init__(  # noqa: PLR0913
        self,
        daemon: ChangeWatchDaemon,
        *,
        listen_interval: float,
        prompt: Callable[[], WaitOutcome],
        keypresses: TextIO | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> None:
        self._daemon = daemon
        self._listen_interval = listen_interval
        self._prompt = prompt
        self._keypresses = keypresses
        self._on_status = on_status or (lambda _msg: None)

    def wait_for_changes(self) -> WaitOutcome:
        """Block until rerun or resume; ``DaemonQuit`` from the prompt propagates."""

        self._on_status("Waiting for file changes (press ENTER to pause)")
        self._daemon.resume()

        token = CancelToken()
        timer = DebounceTimer(self._daemon, self._listen_interval, token)
        timer.start()
        try:
            keypress = self._block(token)
        finally:
            timer.stop()
            changetime = token.changetime
            token.close()

        if timer.error is not None and not keypress:
            raise timer.error

        self._daemon.pause()
        if keypress:
            logger.debug("Keypress received, handing over to prompt")
            outcome = self._prompt()
            if outcome is WaitOutcome.RERUN:
                self._daemon.mark_handled(self._daemon.snapshot().changetime)
        else:
            logger.info("Files have changed")
            self._on_status("Files have changed")
            if changetime is not None:
                self._daemon.mark_handled(changetime)
            outcome = WaitOutcome.RERUN

        if outcome is WaitOutcome.RERUN:
            self._remove_vanished()
        return outcome

    def _block(self, token: CancelToken) -> bool:
        """Return True on keypress, False on cancellation; the token wins ties."""

        while True:
            sources: list[object] = [token]
            if self._keypresses is not None:
                sources.append(self._keypresses)
            ready, _, _ = select.select(sources, [], [])
            if token in ready:
                return False
            line = self._keypresses.readline() if self._keypresses is not None else ""
            if line:
                return True
            logger.info("Keypress input closed; only file changes will be watched")
            self._keypresses = None

    def _remove_vanished(self) -> None:
        tmp_dir = self._daemon.tmp_dir
        for path in self._daemon.take_vanished():
            if not is_within(path, tmp_dir):
                logger.warning("Refusing to remove %s outside %s", path, tmp_dir)
                continue
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            elif path.exists() or path.is_symlink():
                path.unlink()
            else:
                continue
            logger.debug("Removed vanished file %s", path)
