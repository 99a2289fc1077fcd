"""Shared test fixtures."""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

from buildwatch.dependencies import DependencyChecker
from buildwatch.extensions.runtime import PARALLEL_CAPABILITY

_FAKE_GNUPLOT = textwrap.dedent(
    """\
    import sys
    from pathlib import Path

    name = sys.argv[1]
    lines = Path(name).read_text().splitlines()
    for number, line in enumerate(lines, start=1):
        if line.startswith("plot undefined"):
            print(line)
            print("     ^")
            print(f'"{name}", line {number}: undefined variable: undefined')
            print()
    """,
)


class FakeObserver:
    """Stands in for a watchdog observer; tests dispatch events by hand."""

    def __init__(self) -> None:
        self.handlers: list[tuple[object, str, bool]] = []
        self.started = False
        self.stopped = False
        self.stop_error: BaseException | None = None

    def schedule(self, handler, path, recursive=False):
        self.handlers.append((handler, path, recursive))

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True
        if self.stop_error is not None:
            raise self.stop_error

    def join(self, timeout=None) -> None:
        return None

    @property
    def handler(self):
        return self.handlers[0][0]


class ObserverRecorder:
    """Observer factory remembering every observer it created, in order."""

    def __init__(self) -> None:
        self.created: list[FakeObserver] = []

    def __call__(self) -> FakeObserver:
        observer = FakeObserver()
        self.created.append(observer)
        return observer

    @property
    def ignore_watcher(self) -> FakeObserver:
        return self.created[-2]

    @property
    def primary(self) -> FakeObserver:
        return self.created[-1]


@pytest.fixture()
def observers() -> ObserverRecorder:
    return ObserverRecorder()


@pytest.fixture()
def fake_gnuplot(tmp_path: Path) -> tuple[str, ...]:
    """Command that behaves like gnuplot for files with ``plot undefined`` lines."""

    script = tmp_path / "fake_gnuplot.py"
    script.write_text(_FAKE_GNUPLOT, "utf-8")
    return (sys.executable, str(script))


@pytest.fixture()
def all_available() -> DependencyChecker:
    return DependencyChecker(
        which=lambda name: f"/usr/bin/{name}",
        find_spec=lambda _name: object(),
        capabilities={PARALLEL_CAPABILITY: lambda: True},
    )
