"""Change watch daemon: a primary watcher plus an ignore-manifest watcher."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from buildwatch.daemon.manifest import (
    IgnoreSet,
    discover_manifests,
    is_manifest,
    manifest_name,
    read_manifest,
    remove_manifest,
    write_manifest,
)
from buildwatch.daemon.state import ChangeKind, WatchSnapshot, WatchStateOwner

logger = logging.getLogger(__name__)

OBSERVER_JOIN_TIMEOUT_SECONDS = 5.0
# Errors the watcher library is known to raise when stopping an observer whose
# emitter already died or never started; anything else propagates.
TOLERATED_TEARDOWN_ERRORS: tuple[type[BaseException], ...] = (OSError, RuntimeError)

_KIND_BY_EVENT_TYPE = {
    "created": ChangeKind.CREATED,
    "modified": ChangeKind.MODIFIED,
    "deleted": ChangeKind.DELETED,
    "moved": ChangeKind.MOVED,
}


class _PrimaryHandler(FileSystemEventHandler):
    """Forwards job-directory changes to the state owner."""

    def __init__(self, owner: WatchStateOwner) -> None:
        super().__init__()
        self._owner = owner

    def on_any_event(self, event: FileSystemEvent) -> None:
        kind = _KIND_BY_EVENT_TYPE.get(event.event_type)
        if kind is None:
            return
        if event.is_directory and kind is not ChangeKind.DELETED:
            return
        self._owner.post_change(kind, os.fsdecode(event.src_path))
        if kind is ChangeKind.MOVED:
            dest_path = os.fsdecode(getattr(event, "dest_path", "") or "")
            if dest_path:
                self._owner.post_change(ChangeKind.CREATED, dest_path)


class _ManifestHandler(FileSystemEventHandler):
    """Forwards newly appearing sibling ignore manifests to the state owner."""

    def __init__(self, owner: WatchStateOwner) -> None:
        super().__init__()
        self._owner = owner

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in {"created", "modified", "moved"}:
            return
        path = os.fsdecode(event.src_path)
        if event.event_type == "moved":
            path = os.fsdecode(getattr(event, "dest_path", "") or "")
        if path and is_manifest(path):
            self._owner.post_manifest(path)


class ChangeWatchDaemon:
    """Explicitly constructed watch context for one build job.

    Writes this job's ignore manifest before any watcher starts, so daemons
    started later exclude its generated files right away, and removes it on
    ``stop``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        job_name: str,
        job_path: Path,
        tmp_dir: Path,
        generated: Iterable[str] = (),
        observer_factory: Callable[[], Any] = Observer,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_name = job_name
        self.job_path = job_path.absolute()
        self.tmp_dir = tmp_dir.absolute()
        self.clock = clock
        self.manifest_name = manifest_name(job_name)
        self.manifest_path = self.job_path / self.manifest_name
        self._observer_factory = observer_factory
        self._ignore = IgnoreSet([*generated, self.manifest_name])
        self._owner = WatchStateOwner(
            job_path=self.job_path,
            tmp_dir=self.tmp_dir,
            ignore=self._ignore,
            own_manifest=self.manifest_name,
            clock=clock,
        )
        self._primary: Any | None = None
        self._ignore_watcher: Any | None = None

    @property
    def running(self) -> bool:
        return self._primary is not None

    def start(self) -> None:
        if self._primary is not None:
            raise RuntimeError("Watch daemon already running.")

        write_manifest(self.job_path, self.job_name, self._ignore)
        try:
            for manifest in discover_manifests(self.job_path):
                if manifest.name != self.manifest_name:
                    self._ignore.add(read_manifest(manifest))

            self._owner.start()

            self._ignore_watcher = self._observer_factory()
            self._ignore_watcher.schedule(
                _ManifestHandler(self._owner),
                str(self.job_path),
                recursive=False,
            )
            self._ignore_watcher.start()

            self._primary = self._observer_factory()
            self._primary.schedule(
                _PrimaryHandler(self._owner),
                str(self.job_path),
                recursive=True,
            )
            self._primary.start()
        except BaseException:
            self.stop()
            raise
        logger.info(
            "Watching %s (ignoring %d pattern(s))",
            self.job_path,
            len(self._ignore),
        )

    def stop(self) -> None:
        observers = (self._primary, self._ignore_watcher)
        self._primary = None
        self._ignore_watcher = None
        try:
            for observer in observers:
                if observer is not None:
                    _stop_observer(observer)
        finally:
            self._owner.stop()
            remove_manifest(self.manifest_path)
        logger.info("Stopped watching %s", self.job_path)

    def __enter__(self) -> ChangeWatchDaemon:
        self.start()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.stop()

    # -- delegated state access --------------------------------------------------

    def snapshot(self) -> WatchSnapshot:
        return self._owner.snapshot()

    def mark_handled(self, changetime: float) -> None:
        self._owner.mark_handled(changetime)

    def pause(self) -> None:
        self._owner.pause()

    def resume(self) -> None:
        self._owner.resume()

    def take_vanished(self) -> list[Path]:
        return self._owner.take_vanished()

    def ignored(self) -> list[str]:
        return list(self.snapshot().ignored)


def _stop_observer(observer: Any) -> None:
    try:
        observer.stop()
        observer.join(timeout=OBSERVER_JOIN_TIMEOUT_SECONDS)
    except TOLERATED_TEARDOWN_ERRORS as error:
        logger.debug("Ignoring error while stopping watcher: %s", error)
