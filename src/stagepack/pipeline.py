"""Sequential driver: archive the source tree, then package it."""

from __future__ import annotations

import contextlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from stagepack.archiver import SourceSnapshot, clean_archive, snapshot
from stagepack.artifact import Artifact
from stagepack.config import Settings, get_settings, validate_settings_for_env
from stagepack.descriptor.loader import check_identity, load_descriptor
from stagepack.descriptor.models import PackageDescriptor
from stagepack.environment import missing_toolchain
from stagepack.errors import (
    ConfigError,
    PipelineLockedError,
    StageError,
    StagepackError,
    ToolchainMissingError,
)
from stagepack.ids import new_run_id
from stagepack.layout import BuildLayout
from stagepack.lock import target_lock
from stagepack.logging import attach_run_log, bind_context, clear_context, detach_run_log
from stagepack.packager import build, plan_build
from stagepack.runs import PipelineRun
from stagepack.stages import Stage

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PipelineResult:
    run_id: str
    snapshot: SourceSnapshot
    artifact: Artifact


def layout_for(settings: Settings) -> BuildLayout:
    return BuildLayout(
        output_root=Path(settings.output_dir).resolve(),
        name=settings.package_name,
        version=settings.package_version,
    )


def load_configured_descriptor(settings: Settings) -> PackageDescriptor:
    """Load the descriptor and confirm it matches the configured name/version."""
    try:
        validate_settings_for_env(settings)
    except ValueError as exc:
        raise StageError(Stage.PREFLIGHT.value, ConfigError(str(exc))) from exc
    try:
        descriptor = load_descriptor(Path(settings.descriptor_path))
        check_identity(descriptor, settings.package_name, settings.package_version)
    except StagepackError as exc:
        raise StageError(Stage.PREFLIGHT.value, exc) from exc
    return descriptor


def check_toolchain(descriptor: PackageDescriptor) -> None:
    missing = missing_toolchain(descriptor.build_requires, os.environ.get("PATH"))
    if missing:
        raise ToolchainMissingError(missing)


def archive_sources(settings: Settings, layout: BuildLayout) -> SourceSnapshot:
    root = Path(settings.source_root).resolve()
    exclusions = settings.exclusions()
    try:
        nested = layout.output_root.relative_to(root).as_posix()
    except ValueError:
        nested = ""
    if nested and nested != "." and nested not in exclusions:
        exclusions.append(nested)
    clean_archive(layout.archive_path)
    return snapshot(root, exclusions, layout.archive_path, mtime=settings.source_date_epoch)


def hold_target_lock(
    stack: contextlib.ExitStack[bool | None], layout: BuildLayout, settings: Settings
) -> None:
    """Take the per-target lock for the rest of *stack*; refusal fails PREFLIGHT."""
    try:
        stack.enter_context(
            target_lock(layout.lock_path, timeout_s=settings.lock_timeout_seconds)
        )
    except PipelineLockedError as exc:
        logger.error("refusing to run %s: %s", layout.target, exc)
        raise StageError(Stage.PREFLIGHT.value, exc) from exc


def snapshot_sources(settings: Settings | None = None) -> SourceSnapshot:
    """Run the Archiver alone for the configured name+version."""
    settings = settings or get_settings()
    load_configured_descriptor(settings)
    layout = layout_for(settings)
    layout.prepare()
    with contextlib.ExitStack() as stack:
        hold_target_lock(stack, layout, settings)
        try:
            return archive_sources(settings, layout)
        except StagepackError as exc:
            raise StageError(Stage.ARCHIVE.value, exc) from exc


def run_pipeline(settings: Settings | None = None) -> PipelineResult:
    """Run the whole pipeline for the configured name+version.

    Holds the per-target lock from the precondition check through ASSEMBLE;
    a concurrent run for the same target is refused (or waits, when
    LOCK_TIMEOUT_SECONDS is positive). Commands are parsed before ARCHIVE so
    a broken descriptor never replaces the previous source archive.
    """
    settings = settings or get_settings()
    descriptor = load_configured_descriptor(settings)
    layout = layout_for(settings)
    layout.prepare()

    run_id = new_run_id()
    bind_context(run_id=run_id, package=layout.target)
    try:
        with contextlib.ExitStack() as stack:
            hold_target_lock(stack, layout, settings)
            run = PipelineRun(run_id, layout)
            stack.callback(detach_run_log, attach_run_log(run.run_dir / "run.log", run_id))
            logger.info("starting run %s for %s", run_id, descriptor.artifact_id)

            with run.stage_scope(Stage.PREFLIGHT):
                check_toolchain(descriptor)
                plan = plan_build(descriptor, layout, settings)

            with run.stage_scope(Stage.ARCHIVE):
                source_snapshot = archive_sources(settings, layout)

            artifact = build(
                source_snapshot.archive_path,
                descriptor,
                layout=layout,
                settings=settings,
                run=run,
                plan=plan,
            )
    finally:
        clear_context()
    return PipelineResult(run_id=run_id, snapshot=source_snapshot, artifact=artifact)
