"""Controllers for build CLI commands."""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

from buildwatch.config import Settings
from buildwatch.daemon import (
    ChangeWatchDaemon,
    DaemonPrompt,
    DaemonQuit,
    WaitController,
    WaitOutcome,
)
from buildwatch.dependencies import DependencyChecker
from buildwatch.extensions import BuildContext, Extension, default_extensions
from buildwatch.extensions.base import Severity
from buildwatch.fingerprints import FingerprintStore
from buildwatch.scheduler import AggregatedResult, ExtensionRegistry, ExtensionStatus, Scheduler

logger = logging.getLogger(__name__)

_STATUS_MARKS = {
    ExtensionStatus.FRESH: "-",
    ExtensionStatus.SUCCEEDED: "ok",
    ExtensionStatus.FAILED: "FAIL",
    ExtensionStatus.MISSING_DEPENDENCY: "MISSING",
    ExtensionStatus.BLOCKED: "BLOCKED",
}


@dataclass(slots=True)
class BuildCommand:
    """CLI input for one build, optionally followed by daemon mode."""

    job_name: str
    job_path: Path | None = None
    tmp_dir: Path | None = None
    daemon: bool | None = None
    listen_interval: float | None = None


@dataclass(slots=True)
class BuildRunOutcome:
    """Result of the last build run for CLI exit status."""

    success: bool
    runs: int = 0
    lines: list[str] = field(default_factory=list)


class BuildCliController:
    """Wires settings, scheduler and watch daemon for CLI commands."""

    def __init__(
        self,
        *,
        extensions_factory: Callable[[], Iterable[Extension]] = default_extensions,
        checker: DependencyChecker | None = None,
        observer_factory: Callable[[], Any] | None = None,
        keypresses: TextIO | None = None,
        prompt_factory: Callable[[ChangeWatchDaemon], Callable[[], WaitOutcome]] = DaemonPrompt,
    ) -> None:
        self._extensions_factory = extensions_factory
        self._checker = checker or DependencyChecker()
        self._observer_factory = observer_factory
        self._keypresses = keypresses
        self._prompt_factory = prompt_factory

    def build(
        self,
        command: BuildCommand,
        *,
        emit: Callable[[list[str]], None] = lambda _lines: None,
    ) -> BuildRunOutcome:
        settings = self._settings(command)
        settings.validate()
        tmp_dir = settings.resolved_tmp_dir
        tmp_dir.mkdir(parents=True, exist_ok=True)

        registry = ExtensionRegistry()
        for extension in self._extensions_factory():
            registry.register(extension)
        scheduler = Scheduler(registry, checker=self._checker)
        context = BuildContext(
            job_name=command.job_name,
            job_path=settings.job_path,
            tmp_dir=tmp_dir,
            fingerprints=FingerprintStore.load(tmp_dir / f"{command.job_name}.fingerprints.json"),
            on_progress=lambda message: emit([message]),
        )

        outcome = BuildRunOutcome(success=False)
        self._run_once(scheduler, context, outcome, emit)
        if not settings.daemon.enabled:
            return outcome

        daemon_kwargs: dict[str, Any] = {}
        if self._observer_factory is not None:
            daemon_kwargs["observer_factory"] = self._observer_factory
        with ChangeWatchDaemon(
            job_name=command.job_name,
            job_path=settings.job_path,
            tmp_dir=tmp_dir,
            generated=_generated_patterns(settings.job_path, tmp_dir),
            **daemon_kwargs,
        ) as daemon:
            waiter = WaitController(
                daemon,
                listen_interval=settings.daemon.listen_interval_seconds,
                prompt=self._prompt_factory(daemon),
                keypresses=self._keypresses if self._keypresses is not None else sys.stdin,
                on_status=lambda message: emit([message]),
            )
            try:
                while True:
                    if waiter.wait_for_changes() is WaitOutcome.RERUN:
                        self._run_once(scheduler, context, outcome, emit)
            except DaemonQuit:
                emit(["Quitting daemon."])
            except KeyboardInterrupt:
                emit(["Interrupted, stopping daemon."])
        return outcome

    def list_extensions(self) -> list[str]:
        registry = ExtensionRegistry()
        for extension in self._extensions_factory():
            registry.register(extension)
        lines: list[str] = []
        for extension in registry.ordered():
            lines.append(f"{extension.name}: {extension.description}")
            if extension.requires:
                lines.append(f"  requires: {', '.join(extension.requires)}")
            for dependency in extension.dependencies:
                state = "available" if self._checker.available(dependency) else "missing"
                lines.append(
                    f"  [{state}] {dependency.necessity.value} {dependency.describe()}",
                )
        return lines

    def _run_once(
        self,
        scheduler: Scheduler,
        context: BuildContext,
        outcome: BuildRunOutcome,
        emit: Callable[[list[str]], None],
    ) -> None:
        result = scheduler.run(context)
        (context.tmp_dir / f"{context.job_name}.buildlog").write_text(result.raw_log, "utf-8")
        lines = render_result_lines(result)
        outcome.success = result.ok
        outcome.runs += 1
        outcome.lines.extend(lines)
        emit(lines)

    @staticmethod
    def _settings(command: BuildCommand) -> Settings:
        settings = Settings.from_env(job_path=command.job_path, tmp_dir=command.tmp_dir)
        if command.daemon is not None:
            settings.daemon.enabled = command.daemon
        if command.listen_interval is not None:
            settings.daemon.listen_interval_seconds = command.listen_interval
        return settings


def render_result_lines(result: AggregatedResult) -> list[str]:
    lines: list[str] = []
    for outcome in result.outcomes:
        lines.append(f"[{_STATUS_MARKS[outcome.status]}] {outcome.name}: {outcome.status.value}")
    for diagnostic in result.diagnostics:
        location = diagnostic.source_file or "-"
        if diagnostic.line_numbers:
            location += ":" + ",".join(str(number) for number in diagnostic.line_numbers)
        text = diagnostic.text.replace("\n", "\n    ")
        lines.append(f"  {diagnostic.severity.value} {location}: {text}")
    errors = sum(1 for diagnostic in result.diagnostics if diagnostic.severity is Severity.ERROR)
    lines.append(
        f"Build {'succeeded' if result.ok else 'failed'} "
        f"({len(result.executed)} extension(s) run, {errors} error(s))",
    )
    return lines


def _generated_patterns(job_path: Path, tmp_dir: Path) -> list[str]:
    try:
        return [tmp_dir.absolute().relative_to(job_path.absolute()).as_posix()]
    except ValueError:
        return []
