"""Content fingerprints used to decide which build inputs are stale."""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

FINGERPRINT_STORE_VERSION = 1
_CHUNK_SIZE = 1 << 16


def file_digest(path: Path) -> str:
    """Return the SHA-256 hex digest of the file content."""

    hasher = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class FingerprintStore:
    """Per-file content digests recorded after the last run of a job.

    ``changed`` is a pure query; only ``record`` mutates the store. Read errors
    propagate as ``OSError`` so an unreadable file is never taken as unchanged.
    """

    def __init__(self, store_path: Path | None = None) -> None:
        self.store_path = store_path
        self._digests: dict[str, str] = {}

    @classmethod
    def load(cls, store_path: Path) -> FingerprintStore:
        """Load persisted digests; a missing store file yields an empty store."""

        store = cls(store_path)
        if not store_path.exists():
            return store
        try:
            payload = json.loads(store_path.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise ValueError(f"Corrupt fingerprint store: {store_path}") from error
        if not isinstance(payload, dict) or not isinstance(payload.get("files"), dict):
            raise ValueError(f"Corrupt fingerprint store: {store_path}")
        store._digests = {str(key): str(value) for key, value in payload["files"].items()}
        logger.debug("Loaded %d fingerprints from %s", len(store._digests), store_path)
        return store

    def save(self) -> None:
        if self.store_path is None:
            return
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": FINGERPRINT_STORE_VERSION,
            "files": dict(sorted(self._digests.items())),
        }
        self.store_path.write_text(json.dumps(payload, indent=2), "utf-8")

    def digest(self, path: Path) -> str:
        return file_digest(path)

    def stored(self, path: Path) -> str | None:
        return self._digests.get(_key(path))

    def changed(self, path: Path) -> bool:
        """True if the path was never recorded or its content differs."""

        recorded = self._digests.get(_key(path))
        if recorded is None:
            return True
        return file_digest(path) != recorded

    def record(self, path: Path, digest: str | None = None) -> str:
        """Store ``digest`` (or the current content digest) for ``path``."""

        value = digest if digest is not None else file_digest(path)
        self._digests[_key(path)] = value
        return value

    def __contains__(self, path: object) -> bool:
        return isinstance(path, (str, Path)) and _key(Path(path)) in self._digests

    def __len__(self) -> int:
        return len(self._digests)


def _key(path: Path) -> str:
    return str(Path(path).absolute())
