"""Extension registry and the dependency-ordered build scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from collections.abc import Iterator
from graphlib import CycleError, TopologicalSorter
from pathlib import Path

from buildwatch.dependencies import DependencyChecker
from buildwatch.extensions.base import (
    BuildContext,
    Dependency,
    Diagnostic,
    Extension,
    ExtensionResult,
    MissingDependencyError,
    Necessity,
    PositionKind,
    Severity,
)

logger = logging.getLogger(__name__)


class ExtensionStatus(str, Enum):
    """How one extension ended in a scheduler run."""

    FRESH = "fresh"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    MISSING_DEPENDENCY = "missing_dependency"
    BLOCKED = "blocked"


_CASCADING_STATUSES = frozenset({ExtensionStatus.MISSING_DEPENDENCY, ExtensionStatus.BLOCKED})


@dataclass(slots=True)
class ExtensionOutcome:
    """Per-extension record kept in the aggregated result."""

    name: str
    status: ExtensionStatus
    result: ExtensionResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in {ExtensionStatus.FRESH, ExtensionStatus.SUCCEEDED}


@dataclass(slots=True)
class AggregatedResult:
    """Combined result of every extension in one scheduler run."""

    ok: bool = True
    diagnostics: list[Diagnostic] = field(default_factory=list)
    raw_log: str = ""
    outcomes: list[ExtensionOutcome] = field(default_factory=list)

    @property
    def executed(self) -> list[str]:
        return [
            outcome.name
            for outcome in self.outcomes
            if outcome.status in {ExtensionStatus.SUCCEEDED, ExtensionStatus.FAILED}
        ]

    def outcome(self, name: str) -> ExtensionOutcome:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        raise KeyError(name)


class ExtensionRegistry:
    """Explicit ordered collection of extensions."""

    def __init__(self) -> None:
        self._extensions: list[Extension] = []

    def register(self, extension: Extension) -> None:
        if any(existing.name == extension.name for existing in self._extensions):
            raise ValueError(f"Extension already registered: {extension.name}")
        self._extensions.append(extension)

    def __iter__(self) -> Iterator[Extension]:
        return iter(list(self._extensions))

    def __len__(self) -> int:
        return len(self._extensions)

    def ordered(self) -> list[Extension]:
        """Topological order over ``requires``; ties keep registration order."""

        by_name = {extension.name: extension for extension in self._extensions}
        position = {extension.name: index for index, extension in enumerate(self._extensions)}
        for extension in self._extensions:
            unknown = [name for name in extension.requires if name not in by_name]
            if unknown:
                raise ValueError(
                    f"Extension {extension.name} requires unknown extension(s): "
                    f"{', '.join(unknown)}",
                )

        sorter = TopologicalSorter(
            {extension.name: tuple(extension.requires) for extension in self._extensions},
        )
        try:
            sorter.prepare()
        except CycleError as error:
            raise ValueError(f"Extension ordering has a cycle: {error.args[1]}") from error

        ordered: list[Extension] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready(), key=position.__getitem__)
            ordered.extend(by_name[name] for name in ready)
            sorter.done(*ready)
        return ordered


class Scheduler:
    """Runs stale extensions in dependency order and aggregates their results."""

    def __init__(
        self,
        registry: ExtensionRegistry,
        *,
        checker: DependencyChecker | None = None,
    ) -> None:
        self.registry = registry
        self.checker = checker or DependencyChecker()

    def run(self, context: BuildContext) -> AggregatedResult:
        aggregated = AggregatedResult()
        statuses: dict[str, ExtensionStatus] = {}
        log_parts: list[str] = []
        captured: dict[Path, str] = {}
        withheld: set[Path] = set()
        diagnostics_by_name: dict[str, list[Diagnostic]] = {}

        for extension in self.registry.ordered():
            outcome = self._run_one(extension, context, statuses, captured, withheld)
            statuses[extension.name] = outcome.status
            aggregated.outcomes.append(outcome)
            if outcome.result is not None:
                diagnostics_by_name[extension.name] = outcome.result.diagnostics
                if outcome.result.raw_log:
                    log_parts.append(_log_header(extension.name) + outcome.result.raw_log)
            if not outcome.ok:
                aggregated.ok = False

        for extension in self.registry:
            aggregated.diagnostics.extend(diagnostics_by_name.get(extension.name, ()))
        aggregated.raw_log = "\n\n".join(log_parts)
        for path, digest in captured.items():
            if path not in withheld:
                context.fingerprints.record(path, digest)
        context.fingerprints.save()
        logger.info(
            "Build run finished: ok=%s executed=%s",
            aggregated.ok,
            ",".join(aggregated.executed) or "-",
        )
        return aggregated

    def _run_one(
        self,
        extension: Extension,
        context: BuildContext,
        statuses: dict[str, ExtensionStatus],
        captured: dict[Path, str],
        withheld: set[Path],
    ) -> ExtensionOutcome:
        blocking = [
            name for name in extension.requires if statuses.get(name) in _CASCADING_STATUSES
        ]
        if blocking:
            message = (
                f"{extension.name} skipped: required extension(s) unavailable: "
                f"{', '.join(blocking)}"
            )
            logger.warning("%s", message)
            return ExtensionOutcome(
                name=extension.name,
                status=ExtensionStatus.BLOCKED,
                result=ExtensionResult(ok=False, diagnostics=[_error(message)]),
                error=message,
            )

        missing_essential: list[Dependency] = []
        degraded: list[Dependency] = []
        for dependency in extension.dependencies:
            if self.checker.available(dependency):
                continue
            if dependency.necessity is Necessity.ESSENTIAL:
                missing_essential.append(dependency)
            else:
                degraded.append(dependency)

        if missing_essential:
            return _missing_dependency_outcome(extension.name, missing_essential)

        warnings: list[Diagnostic] = []
        for dependency in degraded:
            message = (
                f"{extension.name}: recommended dependency {dependency.describe()} is missing; "
                "using the slower fallback"
            )
            logger.warning("%s", message)
            warnings.append(
                Diagnostic(
                    severity=Severity.WARNING,
                    source_file=None,
                    line_numbers=(),
                    column=None,
                    text=message,
                ),
            )

        extension_context = replace(
            context,
            unavailable=context.unavailable | {dependency.identifier for dependency in degraded},
        )
        if not extension.is_stale(extension_context):
            logger.debug("%s is up to date", extension.name)
            return ExtensionOutcome(name=extension.name, status=ExtensionStatus.FRESH)

        snapshot = {
            path: context.fingerprints.digest(path) for path in extension.inputs(extension_context)
        }
        logger.info("Running extension %s", extension.name)
        try:
            result = extension.run(extension_context)
        except MissingDependencyError as error:
            return _missing_dependency_outcome(extension.name, [error.dependency])

        captured.update(snapshot)
        if not result.ok:
            withheld.update(snapshot)

        result.diagnostics[:0] = warnings
        return ExtensionOutcome(
            name=extension.name,
            status=ExtensionStatus.SUCCEEDED if result.ok else ExtensionStatus.FAILED,
            result=result,
        )


def _missing_dependency_outcome(name: str, dependencies: list[Dependency]) -> ExtensionOutcome:
    described = "; ".join(dependency.describe() for dependency in dependencies)
    message = f"{name} cannot run, missing dependency: {described}"
    logger.error("%s", message)
    return ExtensionOutcome(
        name=name,
        status=ExtensionStatus.MISSING_DEPENDENCY,
        result=ExtensionResult(ok=False, diagnostics=[_error(message)]),
        error=message,
    )


def _error(text: str) -> Diagnostic:
    return Diagnostic(
        severity=Severity.ERROR,
        source_file=None,
        line_numbers=(),
        column=None,
        text=text,
        position_kind=PositionKind.APPROXIMATE,
    )


def _log_header(name: str) -> str:
    return f"# # # # #\n# {name}\n# # # # #\n\n"
