"""Runtime configuration for builds and daemon mode."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_LISTEN_INTERVAL_SECONDS = 0.5
DEFAULT_TMP_DIR_NAME = ".buildwatch_tmp"


@dataclass(slots=True)
class DaemonSettings:
    """Watch-and-rebuild settings."""

    enabled: bool = False
    listen_interval_seconds: float = DEFAULT_LISTEN_INTERVAL_SECONDS


@dataclass(slots=True)
class Settings:
    """Application settings for one build job."""

    job_path: Path = field(default_factory=Path.cwd)
    tmp_dir: Path | None = None
    daemon: DaemonSettings = field(default_factory=DaemonSettings)

    @classmethod
    def from_env(
        cls,
        *,
        job_path: Path | None = None,
        tmp_dir: Path | None = None,
    ) -> Settings:
        """Load settings from environment, explicit arguments taking precedence."""

        env_job_path = os.getenv("BUILDWATCH_JOB_PATH", "").strip()
        env_tmp_dir = os.getenv("BUILDWATCH_TMP_DIR", "").strip()
        return cls(
            job_path=job_path or (Path(env_job_path) if env_job_path else Path.cwd()),
            tmp_dir=tmp_dir or (Path(env_tmp_dir) if env_tmp_dir else None),
            daemon=DaemonSettings(
                enabled=_env_bool("BUILDWATCH_DAEMON", default=False),
                listen_interval_seconds=_env_float(
                    "BUILDWATCH_LISTEN_INTERVAL",
                    default=DEFAULT_LISTEN_INTERVAL_SECONDS,
                ),
            ),
        )

    @property
    def resolved_tmp_dir(self) -> Path:
        """Temp directory; defaults to a hidden directory inside the job path."""

        if self.tmp_dir is None:
            return self.job_path / DEFAULT_TMP_DIR_NAME
        if not self.tmp_dir.is_absolute():
            return self.job_path / self.tmp_dir
        return self.tmp_dir

    def as_parameters(self) -> dict[str, object]:
        """Flat key-value view using the parameter names of the build tool."""

        return {
            "daemon": self.daemon.enabled,
            "listeninterval": self.daemon.listen_interval_seconds,
            "jobpath": self.job_path,
            "tmpdir": self.resolved_tmp_dir,
        }

    def validate(self) -> None:
        """Raise configuration error if settings cannot drive a build."""

        if self.daemon.listen_interval_seconds <= 0:
            raise ValueError("BUILDWATCH_LISTEN_INTERVAL must be > 0.")
        if not self.job_path.is_dir():
            raise ValueError(f"Job path is not a directory: {self.job_path}")
        if self.resolved_tmp_dir.resolve() == self.job_path.resolve():
            raise ValueError("BUILDWATCH_TMP_DIR must differ from the job path.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error
