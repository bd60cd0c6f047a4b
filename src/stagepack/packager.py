"""Packager: drive one archive + descriptor through CLEAN .. ASSEMBLE."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from stagepack.artifact import Artifact, assemble
from stagepack.config import Settings, get_settings
from stagepack.descriptor.commands import CommandSpec, parse_commands
from stagepack.descriptor.models import PackageDescriptor
from stagepack.environment import BuildEnvironment, create_environment
from stagepack.ids import new_run_id
from stagepack.layout import BuildLayout
from stagepack.runs import PipelineRun
from stagepack.stages import Stage, clean, install, unpack, validate
from stagepack.stages import build as run_build_commands

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BuildPlan:
    environment: BuildEnvironment
    build_commands: list[CommandSpec]
    install_commands: list[CommandSpec]


def plan_build(
    descriptor: PackageDescriptor, layout: BuildLayout, settings: Settings
) -> BuildPlan:
    """Create the build environment and parse every descriptor command up front."""
    environment = create_environment(settings, layout, descriptor)
    return BuildPlan(
        environment=environment,
        build_commands=parse_commands(
            descriptor.build, environment.variables, cwd=environment.workdir
        ),
        install_commands=parse_commands(
            descriptor.install, environment.variables, cwd=environment.workdir
        ),
    )


def build(
    archive_path: Path,
    descriptor: PackageDescriptor,
    *,
    layout: BuildLayout | None = None,
    settings: Settings | None = None,
    run: PipelineRun | None = None,
    plan: BuildPlan | None = None,
) -> Artifact:
    """Turn *archive_path* into an artifact as described by *descriptor*.

    Stages run strictly in order and the first failure raises StageError
    naming the stage; nothing is cleaned up inline, the next run's CLEAN
    takes care of leftovers. Without a *plan*, commands are parsed in a
    PREFLIGHT stage first.
    """
    settings = settings or get_settings()
    if layout is None:
        layout = BuildLayout(
            output_root=Path(settings.output_dir).resolve(),
            name=descriptor.name,
            version=descriptor.version,
        )
        layout.prepare()
    if run is None:
        run = PipelineRun(new_run_id(), layout)

    if plan is None:
        with run.stage_scope(Stage.PREFLIGHT):
            plan = plan_build(descriptor, layout, settings)

    with run.stage_scope(Stage.CLEAN):
        clean(layout, descriptor, keep_cache=bool(settings.keep_toolchain_cache))

    with run.stage_scope(Stage.UNPACK):
        unpack(archive_path, layout)

    with run.stage_scope(Stage.BUILD):
        run_build_commands(plan.build_commands, plan.environment, log_dir=run.log_dir)

    with run.stage_scope(Stage.INSTALL):
        install(plan.install_commands, plan.environment, layout, log_dir=run.log_dir)

    with run.stage_scope(Stage.VALIDATE):
        unpackaged = validate(descriptor, layout)

    with run.stage_scope(Stage.ASSEMBLE):
        artifact = assemble(descriptor, layout, mtime=settings.source_date_epoch)

    detail = str(artifact.path)
    if unpackaged:
        detail = f"{detail} ({len(unpackaged)} unpackaged files skipped)"
    run.finish(detail)
    logger.info("built %s", artifact.identifier)
    return artifact
