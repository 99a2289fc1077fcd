"""Extension contract shared by the scheduler and build steps."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from buildwatch.fingerprints import FingerprintStore


class DependencyKind(str, Enum):
    """What kind of artifact a dependency is."""

    BINARY = "binary"
    LIBRARY = "library"
    CAPABILITY = "capability"


class Necessity(str, Enum):
    """Whether a missing dependency blocks an extension."""

    ESSENTIAL = "essential"
    RECOMMENDED = "recommended"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class PositionKind(str, Enum):
    """Whether a diagnostic position is exact or only approximate."""

    EXACT = "exact"
    APPROXIMATE = "approximate"


class MissingDependencyError(RuntimeError):
    """An essential tool or library is not available."""

    def __init__(self, dependency: Dependency) -> None:
        super().__init__(f"Missing dependency: {dependency.describe()}")
        self.dependency = dependency


@dataclass(frozen=True, slots=True)
class Dependency:
    """External tool or library an extension needs."""

    identifier: str
    kind: DependencyKind
    necessity: Necessity
    hint: str = ""
    version: str | None = None

    def describe(self) -> str:
        label = f"{self.identifier} ({self.kind.value}"
        if self.version:
            label += f" {self.version}"
        label += ")"
        if self.hint:
            label += f": {self.hint}"
        return label


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """One structured message derived from tool output."""

    severity: Severity
    source_file: str | None
    line_numbers: tuple[int, ...]
    column: int | None
    text: str
    position_kind: PositionKind = PositionKind.APPROXIMATE


@dataclass(slots=True)
class ExtensionResult:
    """Outcome of one extension action."""

    ok: bool
    diagnostics: list[Diagnostic] = field(default_factory=list)
    raw_log: str = ""


@dataclass(slots=True)
class BuildContext:
    """Everything an extension may consult during one scheduler run."""

    job_name: str
    job_path: Path
    tmp_dir: Path
    fingerprints: FingerprintStore
    unavailable: frozenset[str] = frozenset()
    on_progress: Callable[[str], None] = field(default=lambda _msg: None)

    def has_capability(self, identifier: str) -> bool:
        """False if a recommended dependency with this identifier is missing."""

        return identifier not in self.unavailable


class Extension(Protocol):
    """Protocol implemented by build steps."""

    name: str
    description: str
    dependencies: tuple[Dependency, ...]
    requires: tuple[str, ...]

    def inputs(self, context: BuildContext) -> list[Path]:
        """Files whose fingerprints the scheduler records after the action."""

    def is_stale(self, context: BuildContext) -> bool:
        """Whether the action must run."""

    def run(self, context: BuildContext) -> ExtensionResult:
        """Execute the action."""


class DiagnosticParser(Protocol):
    """Turns the output lines of one tool invocation into diagnostics."""

    def __call__(self, lines: Sequence[str]) -> list[Diagnostic]:
        """Parse tool output."""
