"""Per-file execution pattern shared by tool-driven extensions."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from buildwatch.extensions.base import (
    BuildContext,
    Dependency,
    DependencyKind,
    Diagnostic,
    DiagnosticParser,
    ExtensionResult,
    MissingDependencyError,
    Necessity,
    Severity,
)

logger = logging.getLogger(__name__)

PARALLEL_CAPABILITY = "parallel"


class RuntimeState(str, Enum):
    """Lifecycle of one ``FileExtension.run`` call."""

    IDLE = "idle"
    SCANNING = "scanning"
    EXECUTING_SEQUENTIAL = "executing_sequential"
    EXECUTING_PARALLEL = "executing_parallel"
    DONE = "done"


@dataclass(slots=True)
class ToolOutput:
    """Merged stdout/stderr of one tool invocation."""

    lines: list[str]
    exit_code: int

    @property
    def text(self) -> str:
        return "".join(self.lines).strip()


@dataclass(slots=True)
class FileRunResult:
    """Diagnostics and raw log produced for one input file."""

    path: Path
    diagnostics: list[Diagnostic] = field(default_factory=list)
    raw_log: str = ""


def invoke_tool(command: Sequence[str], path: Path | str, *, cwd: Path) -> ToolOutput:
    """Spawn ``command`` with ``path`` appended and capture merged output."""

    completed = subprocess.run(  # noqa: S603
        [*command, str(path)],
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        encoding="utf-8",
        errors="replace",
        check=False,
    )
    return ToolOutput(
        lines=completed.stdout.splitlines(keepends=True),
        exit_code=completed.returncode,
    )


def progress_step(total: int) -> int:
    """Emit a tick every ~10% of ``total`` items."""

    return max(1, total // 10)


def map_files(
    files: Sequence[Path],
    work: Callable[[Path], FileRunResult],
    *,
    parallel: bool,
    max_workers: int | None = None,
    on_tick: Callable[[int, int], None] = lambda _done, _total: None,
) -> list[FileRunResult]:
    """Run ``work`` for every file, returning results in input order."""

    total = len(files)
    step = progress_step(total)
    results: list[FileRunResult] = []
    if parallel and total > 1:
        workers = max(1, min(total, max_workers or os.cpu_count() or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="buildwatch-tool") as pool:
            outcomes: Iterable[FileRunResult] = pool.map(work, files)
            for done, outcome in enumerate(outcomes, start=1):
                results.append(outcome)
                if done % step == 0:
                    on_tick(done, total)
        return results

    for done, path in enumerate(files, start=1):
        results.append(work(path))
        if done % step == 0:
            on_tick(done, total)
    return results


class FileExtension:
    """Run one external tool per changed input file and parse its output.

    Subclasses set the class attributes below; ``parser`` turns the output of
    one invocation into diagnostics.
    """

    name: str = ""
    description: str = ""
    tool_label: str = ""
    input_suffix: str = ""
    dependencies: tuple[Dependency, ...] = ()
    requires: tuple[str, ...] = ()

    def __init__(
        self,
        *,
        command: Sequence[str] | None = None,
        parser: DiagnosticParser,
        max_workers: int | None = None,
    ) -> None:
        self.command = tuple(command) if command else (self.tool_label,)
        self.parser = parser
        self.max_workers = max_workers
        self.state = RuntimeState.IDLE

    def inputs(self, context: BuildContext) -> list[Path]:
        if not context.tmp_dir.is_dir():
            return []
        return sorted(
            path
            for path in context.tmp_dir.iterdir()
            if path.is_file() and path.name.endswith(self.input_suffix)
        )

    def stale_inputs(self, context: BuildContext) -> list[Path]:
        return [path for path in self.inputs(context) if context.fingerprints.changed(path)]

    def is_stale(self, context: BuildContext) -> bool:
        return any(context.fingerprints.changed(path) for path in self.inputs(context))

    def run(self, context: BuildContext) -> ExtensionResult:
        self.state = RuntimeState.SCANNING
        files = self.stale_inputs(context)
        parallel = context.has_capability(PARALLEL_CAPABILITY)
        self.state = (
            RuntimeState.EXECUTING_PARALLEL if parallel else RuntimeState.EXECUTING_SEQUENTIAL
        )
        logger.info(
            "%s: processing %d file(s) %s",
            self.name,
            len(files),
            "in parallel" if parallel else "sequentially",
        )

        def _tick(done: int, total: int) -> None:
            context.on_progress(f"{self.name} [{done}/{total}]")

        try:
            results = map_files(
                files,
                lambda path: self._run_file(path, cwd=context.tmp_dir),
                parallel=parallel,
                max_workers=self.max_workers,
                on_tick=_tick,
            )
        finally:
            self.state = RuntimeState.DONE

        diagnostics = [diagnostic for result in results for diagnostic in result.diagnostics]
        ok = not any(diagnostic.severity is Severity.ERROR for diagnostic in diagnostics)
        raw_log = "\n\n".join(result.raw_log for result in results)
        return ExtensionResult(ok=ok, diagnostics=diagnostics, raw_log=raw_log)

    def _run_file(self, path: Path, *, cwd: Path) -> FileRunResult:
        try:
            output = invoke_tool(self.command, path.name, cwd=cwd)
        except FileNotFoundError as error:
            raise MissingDependencyError(self._essential_dependency()) from error

        header = f"# #\n# {path.name}\n\n"
        if not output.text:
            return FileRunResult(
                path=path,
                raw_log=(
                    f"{header}No output from {self.tool_label}, "
                    "so apparently everything went fine!"
                ),
            )
        return FileRunResult(
            path=path,
            diagnostics=self.parser(output.lines),
            raw_log=f"{header}{output.text}",
        )

    def _essential_dependency(self) -> Dependency:
        for dependency in self.dependencies:
            if (
                dependency.kind is DependencyKind.BINARY
                and dependency.necessity is Necessity.ESSENTIAL
            ):
                return dependency
        return Dependency(self.command[0], DependencyKind.BINARY, Necessity.ESSENTIAL)
