from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import allure
import pytest
from watchdog.events import FileDeletedEvent, FileModifiedEvent

from buildwatch.daemon.wait import CancelToken, DaemonQuit, WaitController, WaitOutcome
from buildwatch.daemon.watcher import ChangeWatchDaemon

pytestmark = [
    allure.epic("Watch Daemon"),
    allure.feature("Wait Controller"),
]

INTERVAL = 0.2


class ScriptedPrompt:
    def __init__(self, *outcomes: WaitOutcome | Exception) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self) -> WaitOutcome:
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture()
def keypress_pipe():
    read_fd, write_fd = os.pipe()
    reader = os.fdopen(read_fd, "r")
    yield reader, write_fd
    reader.close()
    try:
        os.close(write_fd)
    except OSError:
        pass


@pytest.fixture()
def daemon(tmp_path: Path, observers):
    watch = ChangeWatchDaemon(
        job_name="doc",
        job_path=tmp_path,
        tmp_dir=tmp_path / "build",
        generated=("build",),
        observer_factory=observers,
    )
    with watch:
        yield watch


def _debounce_threads() -> list[threading.Thread]:
    return [
        thread
        for thread in threading.enumerate()
        if thread.name == "buildwatch-debounce" and thread.is_alive()
    ]


def _touch(observers, path: Path) -> None:
    observers.primary.handler.dispatch(FileModifiedEvent(str(path)))


def test_burst_of_changes_fires_one_rerun_after_quiet_interval(
    tmp_path: Path,
    observers,
    daemon,
    keypress_pipe,
) -> None:
    reader, write_fd = keypress_pipe
    prompt = ScriptedPrompt(WaitOutcome.RESUME)
    statuses: list[str] = []
    controller = WaitController(
        daemon,
        listen_interval=INTERVAL,
        prompt=prompt,
        keypresses=reader,
        on_status=statuses.append,
    )

    for _ in range(5):
        _touch(observers, tmp_path / "doc.tex")
    burst_end = daemon.snapshot().changetime

    outcome = controller.wait_for_changes()

    assert outcome is WaitOutcome.RERUN
    assert time.monotonic() - burst_end >= INTERVAL
    assert daemon.snapshot().pending is False
    assert daemon.snapshot().paused is True
    assert statuses[-1] == "Files have changed"
    assert prompt.calls == 0
    assert _debounce_threads() == []

    threading.Timer(3 * INTERVAL, os.write, args=(write_fd, b"\n")).start()
    assert controller.wait_for_changes() is WaitOutcome.RESUME
    assert prompt.calls == 1


def test_keypress_hands_over_to_prompt(tmp_path: Path, observers, daemon, keypress_pipe) -> None:
    reader, write_fd = keypress_pipe
    prompt = ScriptedPrompt(WaitOutcome.RERUN)
    controller = WaitController(daemon, listen_interval=INTERVAL, prompt=prompt, keypresses=reader)
    _touch(observers, tmp_path / "doc.tex")
    os.write(write_fd, b"\n")

    outcome = controller.wait_for_changes()

    assert outcome is WaitOutcome.RERUN
    assert prompt.calls == 1
    assert daemon.snapshot().pending is False
    assert _debounce_threads() == []


def test_quit_from_prompt_propagates_and_stops_timer(daemon, keypress_pipe) -> None:
    reader, write_fd = keypress_pipe
    controller = WaitController(
        daemon,
        listen_interval=INTERVAL,
        prompt=ScriptedPrompt(DaemonQuit()),
        keypresses=reader,
    )
    os.write(write_fd, b"q\n")

    with pytest.raises(DaemonQuit):
        controller.wait_for_changes()

    assert _debounce_threads() == []


def test_keypress_racing_pending_change_loses_no_event(
    tmp_path: Path,
    observers,
    daemon,
    keypress_pipe,
) -> None:
    reader, write_fd = keypress_pipe
    prompt = ScriptedPrompt(WaitOutcome.RESUME)
    controller = WaitController(daemon, listen_interval=INTERVAL, prompt=prompt, keypresses=reader)
    _touch(observers, tmp_path / "doc.tex")
    time.sleep(INTERVAL * 1.5)
    os.write(write_fd, b"\n")

    first = controller.wait_for_changes()
    assert first is WaitOutcome.RESUME
    assert prompt.calls == 1
    assert daemon.snapshot().pending is True

    second = controller.wait_for_changes()
    assert second is WaitOutcome.RERUN
    assert prompt.calls == 1


def test_cancellation_wins_a_tie_and_keeps_the_keypress(daemon, keypress_pipe) -> None:
    reader, write_fd = keypress_pipe
    controller = WaitController(
        daemon,
        listen_interval=INTERVAL,
        prompt=ScriptedPrompt(),
        keypresses=reader,
    )
    token = CancelToken()
    try:
        token.cancel(1.0)
        os.write(write_fd, b"\n")
        assert controller._block(token) is False
    finally:
        token.close()

    assert reader.readline() == "\n"


def test_closed_keypress_input_falls_back_to_file_changes(
    tmp_path: Path,
    observers,
    daemon,
    keypress_pipe,
) -> None:
    reader, write_fd = keypress_pipe
    os.close(write_fd)
    prompt = ScriptedPrompt()
    controller = WaitController(daemon, listen_interval=INTERVAL, prompt=prompt, keypresses=reader)
    threading.Timer(INTERVAL, _touch, args=(observers, tmp_path / "doc.tex")).start()

    assert controller.wait_for_changes() is WaitOutcome.RERUN
    assert prompt.calls == 0


def test_rerun_removes_vanished_temp_files_inside_temp_dir_only(
    tmp_path: Path,
    observers,
    daemon,
) -> None:
    build = tmp_path / "build"
    build.mkdir()
    (build / "figure.pdf").write_text("pdf", "utf-8")
    (build / "chapter").mkdir()
    (build / "chapter" / "part.aux").write_text("aux", "utf-8")
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("keep", "utf-8")
    os.symlink(outside, build / "link")

    handler = observers.primary.handler
    handler.dispatch(FileDeletedEvent(str(tmp_path / "figure.pdf")))
    handler.dispatch(FileDeletedEvent(str(tmp_path / "chapter")))
    handler.dispatch(FileDeletedEvent(str(tmp_path / "link" / "secret.txt")))
    handler.dispatch(FileDeletedEvent(str(tmp_path / "never-built.pdf")))
    controller = WaitController(daemon, listen_interval=INTERVAL / 2, prompt=ScriptedPrompt())

    assert controller.wait_for_changes() is WaitOutcome.RERUN

    assert not (build / "figure.pdf").exists()
    assert not (build / "chapter").exists()
    assert (outside / "secret.txt").read_text("utf-8") == "keep"
    assert (build / "link").is_symlink()


def test_change_saved_during_build_triggers_next_rerun(tmp_path: Path, observers, daemon) -> None:
    prompt = ScriptedPrompt()
    controller = WaitController(daemon, listen_interval=INTERVAL, prompt=prompt)
    _touch(observers, tmp_path / "doc.tex")
    assert controller.wait_for_changes() is WaitOutcome.RERUN
    assert daemon.snapshot().paused is True

    _touch(observers, tmp_path / "chapter.tex")

    assert controller.wait_for_changes() is WaitOutcome.RERUN
    assert prompt.calls == 0
    assert daemon.snapshot().pending is False
