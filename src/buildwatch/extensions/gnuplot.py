"""Gnuplot extension: executes generated ``.gnuplot`` files."""

from __future__ import annotations

import re
from collections.abc import Sequence

from buildwatch.extensions.base import (
    Dependency,
    DependencyKind,
    Diagnostic,
    Necessity,
    PositionKind,
    Severity,
)
from buildwatch.extensions.runtime import PARALLEL_CAPABILITY, FileExtension

GNUPLOT_ERROR_RE = re.compile(r'^"(.+?)", line (\d+): (.*)$')


def parse_gnuplot_output(lines: Sequence[str]) -> list[Diagnostic]:
    """Parse gnuplot error output.

    An error is reported as one or more context lines (the offending command
    and a ``^`` marker) followed by ``"<file>", line <n>: <message>``. Blank
    lines separate independent errors.
    """

    diagnostics: list[Diagnostic] = []
    context: list[str] = []
    for raw_line in lines:
        line = raw_line.rstrip("\r\n")
        match = GNUPLOT_ERROR_RE.match(line)
        if match is not None:
            source_file, line_number, message = match.groups()
            diagnostics.append(
                Diagnostic(
                    severity=Severity.ERROR,
                    source_file=source_file,
                    line_numbers=(int(line_number),),
                    column=None,
                    text="\n".join([*context, message.strip()]),
                    position_kind=PositionKind.EXACT,
                ),
            )
        elif not line.strip():
            context = []
        else:
            context.append(line)
    return diagnostics


class GnuplotExtension(FileExtension):
    """Runs gnuplot on every changed ``.gnuplot`` file of the build directory."""

    name = "gnuplot"
    description = "Executes generated gnuplot files"
    tool_label = "gnuplot"
    input_suffix = ".gnuplot"
    dependencies = (
        Dependency("gnuplot", DependencyKind.BINARY, Necessity.ESSENTIAL),
        Dependency(
            PARALLEL_CAPABILITY,
            DependencyKind.CAPABILITY,
            Necessity.RECOMMENDED,
            hint="for better performance with many plots",
        ),
    )

    def __init__(
        self,
        *,
        command: Sequence[str] | None = None,
        max_workers: int | None = None,
    ) -> None:
        super().__init__(command=command, parser=parse_gnuplot_output, max_workers=max_workers)
