"""Build extensions and the contract they implement."""

from buildwatch.extensions.base import (
    BuildContext,
    Dependency,
    DependencyKind,
    Diagnostic,
    DiagnosticParser,
    Extension,
    ExtensionResult,
    MissingDependencyError,
    Necessity,
    PositionKind,
    Severity,
)
from buildwatch.extensions.gnuplot import GnuplotExtension, parse_gnuplot_output
from buildwatch.extensions.runtime import FileExtension, RuntimeState

__all__ = [
    "BuildContext",
    "Dependency",
    "DependencyKind",
    "Diagnostic",
    "DiagnosticParser",
    "Extension",
    "ExtensionResult",
    "FileExtension",
    "GnuplotExtension",
    "MissingDependencyError",
    "Necessity",
    "PositionKind",
    "RuntimeState",
    "Severity",
    "parse_gnuplot_output",
]


def default_extensions() -> list[Extension]:
    """Extensions registered by the CLI, in registration order."""

    return [GnuplotExtension()]
