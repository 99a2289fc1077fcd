from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest
from watchdog.events import (
    DirCreatedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from buildwatch.daemon.manifest import manifest_name
from buildwatch.daemon.state import vanished_mirror
from buildwatch.daemon.watcher import ChangeWatchDaemon

pytestmark = [
    allure.epic("Watch Daemon"),
    allure.feature("Change Watching"),
]


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _daemon(
    job_path: Path,
    observers,
    *,
    job_name: str = "doc",
    generated: tuple[str, ...] = ("build",),
    clock: FakeClock | None = None,
) -> ChangeWatchDaemon:
    return ChangeWatchDaemon(
        job_name=job_name,
        job_path=job_path,
        tmp_dir=job_path / "build",
        generated=generated,
        observer_factory=observers,
        clock=clock or FakeClock(),
    )


def test_start_writes_manifest_and_schedules_both_watchers(tmp_path: Path, observers) -> None:
    daemon = _daemon(tmp_path, observers)

    with daemon:
        manifest = tmp_path / manifest_name("doc")
        assert manifest.read_text("utf-8").splitlines() == ["build", ".buildwatchignore_doc"]
        assert observers.ignore_watcher.started is True
        assert observers.ignore_watcher.handlers[0][2] is False
        assert observers.primary.started is True
        assert observers.primary.handlers[0][1:] == (str(tmp_path.absolute()), True)
        assert daemon.running is True

    assert not manifest.exists()
    assert observers.primary.stopped is True
    assert observers.ignore_watcher.stopped is True
    assert daemon.running is False


def test_starting_twice_is_rejected(tmp_path: Path, observers) -> None:
    with _daemon(tmp_path, observers) as daemon, pytest.raises(RuntimeError, match="already"):
        daemon.start()


def test_changes_advance_changetime_unless_ignored(tmp_path: Path, observers) -> None:
    clock = FakeClock()
    with _daemon(tmp_path, observers, clock=clock) as daemon:
        handler = observers.primary.handler
        assert daemon.snapshot().pending is False

        clock.now = 105.0
        handler.dispatch(FileModifiedEvent(str(tmp_path / "build" / "doc.log")))
        handler.dispatch(FileModifiedEvent(str(tmp_path / manifest_name("other"))))
        handler.dispatch(DirCreatedEvent(str(tmp_path / "figures")))
        assert daemon.snapshot().pending is False

        handler.dispatch(FileModifiedEvent(str(tmp_path / "doc.tex")))
        snapshot = daemon.snapshot()
        assert snapshot.pending is True
        assert snapshot.changetime == 105.0

        daemon.mark_handled(snapshot.changetime)
        assert daemon.snapshot().pending is False


def test_changetime_never_decreases(tmp_path: Path, observers) -> None:
    clock = FakeClock()
    with _daemon(tmp_path, observers, clock=clock) as daemon:
        clock.now = 110.0
        observers.primary.handler.dispatch(FileModifiedEvent(str(tmp_path / "a.tex")))
        clock.now = 104.0
        observers.primary.handler.dispatch(FileModifiedEvent(str(tmp_path / "b.tex")))

        assert daemon.snapshot().changetime == 110.0


def test_changes_are_stamped_on_arrival(tmp_path: Path, observers) -> None:
    clock = FakeClock()
    with _daemon(tmp_path, observers, clock=clock) as daemon:
        clock.now = 130.0
        observers.primary.handler.dispatch(FileModifiedEvent(str(tmp_path / "doc.tex")))
        clock.now = 190.0

        assert daemon.snapshot().changetime == 130.0


def test_changes_while_paused_are_applied_on_resume(tmp_path: Path, observers) -> None:
    clock = FakeClock()
    with _daemon(tmp_path, observers, clock=clock) as daemon:
        daemon.pause()
        clock.now = 120.0
        observers.primary.handler.dispatch(FileModifiedEvent(str(tmp_path / "doc.tex")))
        observers.primary.handler.dispatch(FileDeletedEvent(str(tmp_path / "figure.pdf")))
        assert daemon.snapshot().pending is False
        assert daemon.take_vanished() == []

        clock.now = 150.0
        daemon.resume()
        snapshot = daemon.snapshot()

        assert snapshot.pending is True
        assert snapshot.changetime == 120.0
        assert daemon.take_vanished() == [tmp_path.absolute() / "build" / "figure.pdf"]


def test_sibling_started_earlier_is_ignored_from_the_start(tmp_path: Path, observers) -> None:
    clock = FakeClock()
    with _daemon(tmp_path, observers, job_name="slides", generated=("slides_out",)):
        with _daemon(tmp_path, observers, job_name="doc", clock=clock) as doc:
            assert "slides_out" in doc.ignored()
            clock.now = 130.0
            observers.primary.handler.dispatch(
                FileCreatedEvent(str(tmp_path / "slides_out" / "slides.pdf")),
            )
            assert doc.snapshot().pending is False


def test_sibling_started_later_is_merged_while_running(tmp_path: Path, observers) -> None:
    clock = FakeClock()
    with _daemon(tmp_path, observers, job_name="doc", clock=clock) as doc:
        doc_ignore_watcher = observers.ignore_watcher
        doc_primary = observers.primary
        with _daemon(tmp_path, observers, job_name="slides", generated=("slides_out",)):
            manifest = tmp_path / manifest_name("slides")
            doc_ignore_watcher.handler.dispatch(FileCreatedEvent(str(manifest)))
            assert "slides_out" in doc.ignored()

            clock.now = 140.0
            doc_primary.handler.dispatch(
                FileModifiedEvent(str(tmp_path / "slides_out" / "slides.pdf")),
            )
            assert doc.snapshot().pending is False


def test_unreadable_manifest_surfaces_on_next_request(tmp_path: Path, observers) -> None:
    with _daemon(tmp_path, observers) as daemon:
        broken = tmp_path / manifest_name("broken")
        broken.mkdir()
        observers.ignore_watcher.handler.dispatch(FileCreatedEvent(str(broken)))

        with pytest.raises(OSError):
            daemon.snapshot()
        assert daemon.snapshot().pending is False


def test_deleted_job_files_queue_their_temp_counterparts(tmp_path: Path, observers) -> None:
    with _daemon(tmp_path, observers) as daemon:
        handler = observers.primary.handler
        handler.dispatch(FileDeletedEvent(str(tmp_path / "figure.pdf")))
        handler.dispatch(FileMovedEvent(str(tmp_path / "old.tex"), str(tmp_path / "new.tex")))
        handler.dispatch(FileDeletedEvent(str(tmp_path.parent / "elsewhere.tex")))

        vanished = daemon.take_vanished()
        assert vanished == [
            tmp_path.absolute() / "build" / "figure.pdf",
            tmp_path.absolute() / "build" / "old.tex",
        ]
        assert daemon.take_vanished() == []


def test_vanished_mirror_refuses_paths_escaping_temp_dir(tmp_path: Path) -> None:
    build = tmp_path / "build"
    build.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    os.symlink(outside, build / "link")

    assert vanished_mirror(tmp_path / "a.pdf", job_path=tmp_path, tmp_dir=build) == build / "a.pdf"
    assert vanished_mirror(build / "a.aux", job_path=tmp_path, tmp_dir=build) == build / "a.aux"
    assert vanished_mirror(tmp_path / "link" / "x", job_path=tmp_path, tmp_dir=build) is None
    assert vanished_mirror(tmp_path.parent / "a.pdf", job_path=tmp_path, tmp_dir=build) is None


def test_stop_tolerates_known_teardown_errors(tmp_path: Path, observers) -> None:
    daemon = _daemon(tmp_path, observers)
    daemon.start()
    observers.primary.stop_error = OSError("emitter already gone")
    observers.ignore_watcher.stop_error = RuntimeError("thread never started")

    daemon.stop()

    assert not (tmp_path / manifest_name("doc")).exists()
    assert daemon.running is False


def test_stop_propagates_unexpected_errors_after_cleanup(tmp_path: Path, observers) -> None:
    daemon = _daemon(tmp_path, observers)
    daemon.start()
    observers.primary.stop_error = ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        daemon.stop()

    assert not (tmp_path / manifest_name("doc")).exists()


def test_failed_start_cleans_up(tmp_path: Path) -> None:
    def _broken_observer():
        raise OSError("inotify limit reached")

    daemon = _daemon(tmp_path, _broken_observer)

    with pytest.raises(OSError, match="inotify"):
        daemon.start()

    assert not (tmp_path / manifest_name("doc")).exists()
