"""Precondition checks reported by ``stagepack check``."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

import click

from stagepack.config import Settings, validate_settings_for_env
from stagepack.descriptor.commands import parse_commands
from stagepack.descriptor.loader import check_identity, load_descriptor
from stagepack.descriptor.models import PackageDescriptor
from stagepack.environment import build_variables
from stagepack.errors import StagepackError
from stagepack.pipeline import layout_for


@dataclass(frozen=True, slots=True)
class CheckResult:
    name: str
    passed: bool
    message: str
    fix_hint: str = ""


def check_tool_exists(name: str) -> CheckResult:
    found = shutil.which(name) is not None
    return CheckResult(
        name=f"{name} on PATH",
        passed=found,
        message=f"{name} found" if found else f"{name} not found",
        fix_hint=f"Install {name} and ensure it is on your PATH.",
    )


def check_config_validates(settings: Settings) -> CheckResult:
    try:
        validate_settings_for_env(settings)
    except ValueError as exc:
        return CheckResult(
            name="Configuration valid",
            passed=False,
            message=str(exc),
            fix_hint="Fix the listed variables in your environment or .env file.",
        )
    return CheckResult(name="Configuration valid", passed=True, message="ok")


def check_source_root(settings: Settings) -> CheckResult:
    root = Path(settings.source_root).resolve()
    ok = root.is_dir() and os.access(root, os.R_OK | os.X_OK)
    return CheckResult(
        name="Source root readable",
        passed=ok,
        message=str(root),
        fix_hint="Point SOURCE_ROOT at the project checkout.",
    )


def check_descriptor(settings: Settings) -> tuple[CheckResult, PackageDescriptor | None]:
    name = "Descriptor loads"
    try:
        descriptor = load_descriptor(Path(settings.descriptor_path))
        check_identity(descriptor, settings.package_name, settings.package_version)
    except StagepackError as exc:
        return (
            CheckResult(
                name=name,
                passed=False,
                message=str(exc),
                fix_hint="Set DESCRIPTOR_PATH or fix the descriptor file.",
            ),
            None,
        )
    return CheckResult(name=name, passed=True, message=descriptor.artifact_id), descriptor


def check_commands_parse(settings: Settings, descriptor: PackageDescriptor) -> CheckResult:
    layout = layout_for(settings)
    variables = build_variables(descriptor, layout, settings.toolchain_cache_var)
    try:
        parse_commands(descriptor.build, variables)
        parse_commands(descriptor.install, variables)
    except StagepackError as exc:
        return CheckResult(
            name="Build/install commands parse",
            passed=False,
            message=str(exc),
            fix_hint="Commands run without a shell: no pipes, '&&' or unknown $VARS.",
        )
    total = len(descriptor.build) + len(descriptor.install)
    return CheckResult(
        name="Build/install commands parse", passed=True, message=f"{total} commands"
    )


def _print_result(result: CheckResult) -> None:
    status = click.style("PASS", fg="green") if result.passed else click.style("FAIL", fg="red")
    click.echo(f"  [{status}] {result.name}: {result.message}")
    if not result.passed and result.fix_hint:
        click.echo(f"    {click.style('Hint:', fg='yellow')} {result.fix_hint}")


def run_checks(settings: Settings) -> bool:
    results: list[CheckResult] = [
        check_config_validates(settings),
        check_source_root(settings),
    ]
    descriptor_result, descriptor = check_descriptor(settings)
    results.append(descriptor_result)
    if descriptor is not None:
        results.append(check_commands_parse(settings, descriptor))
        for requirement in descriptor.build_requires:
            if "(" not in requirement:
                results.append(check_tool_exists(requirement))

    for result in results:
        _print_result(result)
    return all(result.passed for result in results)
