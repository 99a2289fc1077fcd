"""Ignore manifests shared between build daemons in one directory."""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Iterable, Iterator
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

PRODUCT_NAME = "buildwatch"
MANIFEST_PREFIX = f".{PRODUCT_NAME}ignore_"
_GLOB_CHARS = frozenset("*?[")


def manifest_name(job_name: str) -> str:
    return f"{MANIFEST_PREFIX}{job_name}"


def is_manifest(path: str | Path) -> bool:
    name = Path(path).name
    return name.startswith(MANIFEST_PREFIX) and len(name) > len(MANIFEST_PREFIX)


def write_manifest(job_path: Path, job_name: str, patterns: Iterable[str]) -> Path:
    """Publish this job's generated-file patterns for sibling daemons."""

    target = job_path / manifest_name(job_name)
    target.write_text("\n".join(patterns) + "\n", "utf-8")
    logger.debug("Wrote ignore manifest %s", target)
    return target


def read_manifest(path: Path) -> list[str]:
    """Patterns listed in a manifest; a manifest that vanished lists nothing."""

    try:
        content = path.read_text("utf-8")
    except FileNotFoundError:
        return []
    return [line.strip() for line in content.splitlines() if line.strip()]


def discover_manifests(job_path: Path) -> list[Path]:
    return sorted(path for path in job_path.iterdir() if path.is_file() and is_manifest(path))


def remove_manifest(path: Path) -> None:
    path.unlink(missing_ok=True)
    logger.debug("Removed ignore manifest %s", path)


class IgnoreSet:
    """Patterns a watch instance does not treat as user changes.

    Grows monotonically. A plain pattern matches a relative path equal to it or
    below it; a pattern with glob characters uses ``fnmatch``.
    """

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self._patterns: list[str] = []
        self._seen: set[str] = set()
        self.add(patterns)

    def add(self, patterns: Iterable[str]) -> list[str]:
        """Merge patterns, returning the ones that were new."""

        added: list[str] = []
        for pattern in patterns:
            normalized = _normalize(pattern)
            if not normalized or normalized in self._seen:
                continue
            self._seen.add(normalized)
            self._patterns.append(normalized)
            added.append(normalized)
        return added

    def matches(self, relative_path: str) -> bool:
        candidate = _normalize(relative_path)
        for pattern in self._patterns:
            if _GLOB_CHARS & set(pattern):
                if fnmatch.fnmatchcase(candidate, pattern):
                    return True
            elif candidate == pattern or candidate.startswith(f"{pattern}/"):
                return True
        return False

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._patterns))

    def __len__(self) -> int:
        return len(self._patterns)


def _normalize(value: str) -> str:
    text = value.strip().replace("\\", "/")
    if not text:
        return ""
    normalized = str(PurePosixPath(text))
    return "" if normalized == "." else normalized
