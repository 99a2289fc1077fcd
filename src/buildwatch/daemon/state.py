"""Single-owner thread for the daemon's shared watch state.

Watcher threads, the debounce timer and the foreground never touch
``WatchState``, the ignore set or the vanished-file queue directly: they post
messages to one FIFO inbox processed by the owner thread. Ignore merges are
therefore serialized with change handling without pausing any watcher.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from buildwatch.daemon.manifest import IgnoreSet, is_manifest, read_manifest

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30.0


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"


@dataclass(slots=True)
class WatchState:
    """Change bookkeeping; ``changetime`` never decreases."""

    changetime: float
    last_handled: float
    paused: bool = False


@dataclass(frozen=True, slots=True)
class WatchSnapshot:
    """Read-only copy of the watch state handed to other threads."""

    changetime: float
    last_handled: float
    paused: bool
    ignored: tuple[str, ...]

    @property
    def pending(self) -> bool:
        return self.changetime > self.last_handled


class _Op(str, Enum):
    CHANGE = "change"
    MANIFEST = "manifest"
    SNAPSHOT = "snapshot"
    MARK_HANDLED = "mark_handled"
    PAUSE = "pause"
    RESUME = "resume"
    TAKE_VANISHED = "take_vanished"
    STOP = "stop"


@dataclass(slots=True)
class _Message:
    op: _Op
    payload: Any = None
    reply: Future | None = None


class WatchStateOwner:
    """Owns ``WatchState``, the ``IgnoreSet`` and the vanished-file queue.

    Changes are stamped when posted. While paused they are held and applied,
    with their original stamps, on resume.
    """

    def __init__(
        self,
        *,
        job_path: Path,
        tmp_dir: Path,
        ignore: IgnoreSet,
        own_manifest: str,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_path = job_path.absolute()
        self.tmp_dir = tmp_dir.absolute()
        self.clock = clock
        self._ignore = ignore
        self._own_manifest = own_manifest
        now = clock()
        self._state = WatchState(changetime=now, last_handled=now)
        self._vanished: list[Path] = []
        self._held: list[tuple[ChangeKind, str, float]] = []
        self._inbox: queue.Queue[_Message] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._failure: BaseException | None = None

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Watch state owner already running.")
        self._thread = threading.Thread(target=self._loop, daemon=True, name="buildwatch-state")
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._inbox.put(_Message(_Op.STOP))
        self._thread.join(timeout=REQUEST_TIMEOUT_SECONDS)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None

    # -- fire-and-forget messages (watcher threads) ----------------------------

    def post_change(self, kind: ChangeKind, path: str) -> None:
        self._inbox.put(_Message(_Op.CHANGE, (kind, path, self.clock())))

    def post_manifest(self, path: str) -> None:
        self._inbox.put(_Message(_Op.MANIFEST, path))

    # -- request/response messages ---------------------------------------------

    def snapshot(self) -> WatchSnapshot:
        return self._request(_Op.SNAPSHOT)

    def mark_handled(self, changetime: float) -> None:
        self._request(_Op.MARK_HANDLED, changetime)

    def pause(self) -> None:
        self._request(_Op.PAUSE)

    def resume(self) -> None:
        self._request(_Op.RESUME)

    def take_vanished(self) -> list[Path]:
        return self._request(_Op.TAKE_VANISHED)

    def _request(self, op: _Op, payload: Any = None) -> Any:
        if self._thread is None:
            raise RuntimeError("Watch state owner is not running.")
        reply: Future = Future()
        self._inbox.put(_Message(op, payload, reply))
        return reply.result(timeout=REQUEST_TIMEOUT_SECONDS)

    # -- owner thread ----------------------------------------------------------

    def _loop(self) -> None:
        while True:
            message = self._inbox.get()
            if message.op is _Op.STOP:
                return
            try:
                if self._failure is not None and message.reply is not None:
                    failure, self._failure = self._failure, None
                    raise failure
                result = self._handle(message)
            except Exception as error:  # noqa: BLE001
                if message.reply is None:
                    logger.error("Watch event handling failed: %s", error)
                    self._failure = error
                else:
                    message.reply.set_exception(error)
                continue
            if message.reply is not None:
                message.reply.set_result(result)

    def _handle(self, message: _Message) -> Any:
        if message.op is _Op.CHANGE:
            kind, path, stamp = message.payload
            if self._state.paused:
                self._held.append((kind, path, stamp))
            else:
                self._apply_change(kind, path, stamp)
            return None
        if message.op is _Op.MANIFEST:
            self._merge_manifest(message.payload)
            return None
        if message.op is _Op.SNAPSHOT:
            return WatchSnapshot(
                changetime=self._state.changetime,
                last_handled=self._state.last_handled,
                paused=self._state.paused,
                ignored=tuple(self._ignore),
            )
        if message.op is _Op.MARK_HANDLED:
            self._state.last_handled = max(self._state.last_handled, message.payload)
            return None
        if message.op is _Op.PAUSE:
            self._state.paused = True
            return None
        if message.op is _Op.RESUME:
            self._state.paused = False
            held, self._held = self._held, []
            for kind, path, stamp in held:
                self._apply_change(kind, path, stamp)
            return None
        if message.op is _Op.TAKE_VANISHED:
            vanished, self._vanished = self._vanished, []
            return vanished
        raise ValueError(f"Unsupported watch state message: {message.op}")

    def _apply_change(self, kind: ChangeKind, path: str, stamp: float) -> None:
        relative = self._relative(path)
        if relative is None or is_manifest(relative) or self._ignore.matches(relative):
            return

        self._state.changetime = max(self._state.changetime, stamp)
        logger.debug("Change %s: %s", kind.value, relative)
        if kind is ChangeKind.DELETED or kind is ChangeKind.MOVED:
            mirrored = vanished_mirror(
                Path(path),
                job_path=self.job_path,
                tmp_dir=self.tmp_dir,
            )
            if mirrored is not None:
                self._vanished.append(mirrored)

    def _merge_manifest(self, path: str) -> None:
        manifest = Path(path)
        if manifest.name == self._own_manifest:
            return
        added = self._ignore.add(read_manifest(manifest))
        if added:
            logger.info("Ignoring %d pattern(s) from %s", len(added), manifest.name)

    def _relative(self, path: str) -> str | None:
        absolute = Path(os.path.abspath(path))
        try:
            return absolute.relative_to(self.job_path).as_posix()
        except ValueError:
            return None


def vanished_mirror(path: Path, *, job_path: Path, tmp_dir: Path) -> Path | None:
    """Temp-directory counterpart of a removed job file, if it stays inside.

    Returns ``None`` when the counterpart would resolve outside ``tmp_dir``;
    such paths are never queued for deletion.
    """

    absolute = Path(os.path.abspath(path))
    tmp_root = Path(os.path.abspath(tmp_dir))
    if is_within(absolute, tmp_root):
        candidate = absolute
    else:
        try:
            relative = absolute.relative_to(Path(os.path.abspath(job_path)))
        except ValueError:
            return None
        candidate = tmp_root / relative
    if candidate == tmp_root or not is_within(candidate, tmp_root):
        return None
    return candidate


def is_within(path: Path, root: Path) -> bool:
    """Whether ``path`` resolves (following symlinks) to a location below ``root``."""

    resolved_root = root.resolve()
    resolved = path.resolve()
    return resolved != resolved_root and resolved.is_relative_to(resolved_root)
