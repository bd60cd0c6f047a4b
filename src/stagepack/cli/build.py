"""CLI build and snapshot commands: run the packaging pipeline."""

from __future__ import annotations

import json

import click

from stagepack.config import Settings
from stagepack.errors import StageError, StagepackError
from stagepack.pipeline import run_pipeline, snapshot_sources


def _fail(exc: StagepackError) -> click.ClickException:
    if isinstance(exc, StageError):
        return click.ClickException(f"{exc.stage} failed: {exc.cause}")
    return click.ClickException(str(exc))


def run_build(settings: Settings, *, json_output: bool = False) -> None:
    """Run the full pipeline and print where the artifact landed."""
    try:
        result = run_pipeline(settings)
    except StagepackError as exc:
        raise _fail(exc) from exc

    artifact = result.artifact
    if json_output:
        click.echo(
            json.dumps(
                {
                    "run_id": result.run_id,
                    "archive": str(result.snapshot.archive_path),
                    "archived_entries": len(result.snapshot.entries),
                    "artifact": str(artifact.path),
                    "files": [entry.path for entry in artifact.entries],
                },
                indent=2,
            )
        )
        return
    click.echo(f"run: {result.run_id}")
    click.echo(f"source archive: {result.snapshot.archive_path}")
    click.echo(f"artifact: {artifact.path}")
    for entry in artifact.entries:
        flag = " (config, noreplace)" if entry.config_noreplace else ""
        link = f" -> {entry.link_target}" if entry.link_target else ""
        click.echo(f"  {entry.mode} {entry.path}{link}{flag}")


def run_snapshot(settings: Settings) -> None:
    """Archive the source tree only."""
    try:
        source_snapshot = snapshot_sources(settings)
    except StagepackError as exc:
        raise _fail(exc) from exc
    click.echo(f"archived {len(source_snapshot.entries)} entries to {source_snapshot.archive_path}")
