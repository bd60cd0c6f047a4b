"""Click CLI group: build, snapshot, check and inspect commands."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import click

from stagepack.config import Settings, get_settings
from stagepack.logging import configure_logging


def _settings_with(**overrides: object) -> Settings:
    settings = get_settings()
    update = {key: value for key, value in overrides.items() if value is not None}
    if update:
        settings = settings.model_copy(update=update)
    return settings


F = TypeVar("F", bound=Callable[..., object])

_path_options = [
    click.option(
        "--descriptor",
        "descriptor_path",
        type=click.Path(path_type=str),
        default=None,
        help="Override DESCRIPTOR_PATH.",
    ),
    click.option(
        "--source-root",
        type=click.Path(path_type=str),
        default=None,
        help="Override SOURCE_ROOT.",
    ),
    click.option(
        "--output-dir",
        type=click.Path(path_type=str),
        default=None,
        help="Override OUTPUT_DIR.",
    ),
]


def path_options(func: F) -> F:
    for option in reversed(_path_options):
        func = option(func)
    return func


@click.group()
def cli() -> None:
    """stagepack packaging pipeline CLI."""


@cli.command()
@path_options
@click.option("--lock-timeout-s", "lock_timeout_seconds", type=float, default=None)
@click.option("--json", "json_output", is_flag=True, help="Print a JSON summary.")
def build(
    descriptor_path: str | None,
    source_root: str | None,
    output_dir: str | None,
    lock_timeout_seconds: float | None,
    json_output: bool,
) -> None:
    """Archive the source tree and build the package artifact."""
    from stagepack.cli.build import run_build

    settings = _settings_with(
        descriptor_path=descriptor_path,
        source_root=source_root,
        output_dir=output_dir,
        lock_timeout_seconds=lock_timeout_seconds,
    )
    configure_logging(settings.log_level)
    run_build(settings, json_output=json_output)


@cli.command()
@path_options
def snapshot(
    descriptor_path: str | None,
    source_root: str | None,
    output_dir: str | None,
) -> None:
    """Write the source archive only."""
    from stagepack.cli.build import run_snapshot

    settings = _settings_with(
        descriptor_path=descriptor_path,
        source_root=source_root,
        output_dir=output_dir,
    )
    configure_logging(settings.log_level)
    run_snapshot(settings)


@cli.command()
@path_options
def check(
    descriptor_path: str | None,
    source_root: str | None,
    output_dir: str | None,
) -> None:
    """Verify configuration, descriptor and toolchain without building."""
    from stagepack.cli.checks import run_checks

    settings = _settings_with(
        descriptor_path=descriptor_path,
        source_root=source_root,
        output_dir=output_dir,
    )
    if not run_checks(settings):
        raise click.ClickException("checks failed")


@cli.command()
@click.argument("artifact", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "json_output", is_flag=True, help="Print raw metadata JSON.")
def inspect(artifact: Path, json_output: bool) -> None:
    """Show the metadata embedded in an assembled artifact."""
    from stagepack.artifact import read_metadata
    from stagepack.errors import StagepackError

    try:
        metadata = read_metadata(artifact)
    except StagepackError as exc:
        raise click.ClickException(str(exc)) from exc

    if json_output:
        click.echo(json.dumps(metadata, indent=2, sort_keys=True))
        return
    click.echo(
        f"{metadata.get('name')}-{metadata.get('version')}-{metadata.get('release')}"
        f".{metadata.get('arch')}"
    )
    summary = metadata.get("summary")
    if summary:
        click.echo(f"summary: {summary}")
    files = metadata.get("files", [])
    if isinstance(files, list):
        for item in files:
            if not isinstance(item, dict):
                continue
            flag = " (config, noreplace)" if item.get("config_noreplace") else ""
            kind = str(item.get("kind"))
            click.echo(f"  {item.get('mode')} {kind:<17} {item.get('path')}{flag}")

