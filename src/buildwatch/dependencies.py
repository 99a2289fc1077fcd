"""Availability checks for extension dependencies."""

from __future__ import annotations

import importlib.metadata
import importlib.util
import logging
import os
import re
import shutil
from collections.abc import Callable, Mapping

from buildwatch.extensions.base import Dependency, DependencyKind
from buildwatch.extensions.runtime import PARALLEL_CAPABILITY

logger = logging.getLogger(__name__)

_CONSTRAINT_RE = re.compile(r"^\s*(>=|<=|==|!=|>|<)\s*([0-9][0-9a-zA-Z.]*)\s*$")


class DependencyChecker:
    """Answers whether a binary, a Python library or a host capability is available.

    Results are cached per dependency for the checker's lifetime.
    """

    def __init__(
        self,
        *,
        which: Callable[[str], str | None] = shutil.which,
        find_spec: Callable[[str], object | None] = importlib.util.find_spec,
        distribution_version: Callable[[str], str] = importlib.metadata.version,
        capabilities: Mapping[str, Callable[[], bool]] | None = None,
    ) -> None:
        self._which = which
        self._find_spec = find_spec
        self._distribution_version = distribution_version
        self._capabilities = dict(
            capabilities if capabilities is not None else {PARALLEL_CAPABILITY: multiple_cpus},
        )
        self._cache: dict[Dependency, bool] = {}

    def available(self, dependency: Dependency) -> bool:
        cached = self._cache.get(dependency)
        if cached is not None:
            return cached
        result = self._check(dependency)
        self._cache[dependency] = result
        logger.debug("Dependency %s available=%s", dependency.identifier, result)
        return result

    def _check(self, dependency: Dependency) -> bool:
        if dependency.kind is DependencyKind.BINARY:
            return self._which(dependency.identifier) is not None
        if dependency.kind is DependencyKind.CAPABILITY:
            check = self._capabilities.get(dependency.identifier)
            return check is not None and check()

        try:
            spec = self._find_spec(dependency.identifier)
        except (ImportError, ValueError):
            return False
        if spec is None:
            return False
        if dependency.version is None:
            return True

        distribution = dependency.identifier.split(".", 1)[0]
        try:
            installed = self._distribution_version(distribution)
        except importlib.metadata.PackageNotFoundError:
            return False
        return version_satisfies(installed, dependency.version)


def multiple_cpus() -> bool:
    """Parallel tool runs only pay off with more than one CPU."""

    return (os.cpu_count() or 1) > 1


def version_satisfies(installed: str, constraint: str) -> bool:
    """Check ``installed`` against a single constraint such as ``>=3.1.5``."""

    match = _CONSTRAINT_RE.match(constraint)
    if match is None:
        raise ValueError(f"Unsupported version constraint: {constraint!r}")
    operator, wanted = match.groups()
    left = _version_tuple(installed)
    right = _version_tuple(wanted)
    width = max(len(left), len(right))
    left += (0,) * (width - len(left))
    right += (0,) * (width - len(right))
    comparisons = {
        ">=": left >= right,
        "<=": left <= right,
        "==": left == right,
        "!=": left != right,
        ">": left > right,
        "<": left < right,
    }
    return comparisons[operator]


def _version_tuple(value: str) -> tuple[int, ...]:
    parts: list[int] = []
    for token in value.split("."):
        digits = re.match(r"\d+", token)
        if digits is None:
            break
        parts.append(int(digits.group()))
    return tuple(parts)
