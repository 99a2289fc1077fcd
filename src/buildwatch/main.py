"""CLI entrypoint for buildwatch."""

import logging
from pathlib import Path

import rich_click as click

from buildwatch import __version__
from buildwatch.config import DEFAULT_LISTEN_INTERVAL_SECONDS
from buildwatch.controllers import BuildCliController, BuildCommand

click.rich_click.USE_MARKDOWN = True
BUILD_CONTROLLER = BuildCliController()


@click.group()
@click.version_option(version=__version__, prog_name="buildwatch")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def buildwatch(verbose: bool) -> None:
    """Incremental document builds with a watch-and-rebuild daemon."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@buildwatch.command("build")
@click.argument("job_name")
@click.option(
    "--job-path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Job directory. Defaults to BUILDWATCH_JOB_PATH or the current directory.",
)
@click.option(
    "--tmp-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Build directory for generated files, relative to the job path if not absolute.",
)
@click.option(
    "-d",
    "--daemon/--no-daemon",
    default=None,
    help="Re-build automatically when files change. Defaults to BUILDWATCH_DAEMON.",
)
@click.option(
    "--listen-interval",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help=(
        "Quiet period in seconds after the last change before a rebuild "
        f"(default {DEFAULT_LISTEN_INTERVAL_SECONDS})."
    ),
)
def build(
    job_name: str,
    job_path: Path | None,
    tmp_dir: Path | None,
    daemon: bool | None,
    listen_interval: float | None,
) -> None:
    """Run every stale build extension, optionally staying in daemon mode."""

    try:
        result = BUILD_CONTROLLER.build(
            BuildCommand(
                job_name=job_name,
                job_path=job_path,
                tmp_dir=tmp_dir,
                daemon=daemon,
                listen_interval=listen_interval,
            ),
            emit=_emit_lines,
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    if not result.success:
        raise click.ClickException("Build failed.")


@buildwatch.command("extensions")
def extensions() -> None:
    """List registered extensions and the availability of their dependencies."""

    _emit_lines(BUILD_CONTROLLER.list_extensions())


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    buildwatch()
