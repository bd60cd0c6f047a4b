"""Isolated build environment for one packager run."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from stagepack.config import Settings
from stagepack.descriptor.models import PackageDescriptor
from stagepack.layout import INSTALL_DIRS, BuildLayout


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    max_memory_mb: int = 0
    max_cpu_seconds: int = 0
    timeout_seconds: int = 3600


@dataclass(frozen=True, slots=True)
class BuildEnvironment:
    workdir: Path
    cache_dir: Path
    cache_var: str
    env: dict[str, str] = field(default_factory=dict)
    variables: dict[str, str] = field(default_factory=dict)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    log_max_bytes: int = 32 * 1024


def _sanitize_env(allow: set[str]) -> dict[str, str]:
    clean: dict[str, str] = {}
    for key in sorted(allow):
        value = os.environ.get(key)
        if value is not None:
            clean[key] = value
    return clean


def build_variables(
    descriptor: PackageDescriptor,
    layout: BuildLayout,
    cache_var: str,
) -> dict[str, str]:
    """Variables available to descriptor commands as ``$NAME`` references."""
    variables = dict(INSTALL_DIRS)
    variables.update(
        {
            "NAME": descriptor.name,
            "VERSION": descriptor.version,
            "RELEASE": descriptor.release,
            "ARCH": descriptor.arch,
            "SOURCES": str(layout.sources_dir),
            "BUILD": str(layout.source_dir),
            "STAGE": str(layout.staging_root),
            cache_var: str(layout.cache_dir),
        }
    )
    return variables


def create_environment(
    settings: Settings,
    layout: BuildLayout,
    descriptor: PackageDescriptor,
) -> BuildEnvironment:
    cache_var = settings.toolchain_cache_var.strip()
    variables = build_variables(descriptor, layout, cache_var)
    env = _sanitize_env(settings.env_allowlist())
    env.update(variables)
    return BuildEnvironment(
        workdir=layout.source_dir,
        cache_dir=layout.cache_dir,
        cache_var=cache_var,
        env=env,
        variables=variables,
        limits=ResourceLimits(
            max_memory_mb=settings.build_max_memory_mb,
            max_cpu_seconds=settings.build_max_cpu_seconds,
            timeout_seconds=settings.command_timeout_seconds,
        ),
        log_max_bytes=settings.command_log_max_bytes,
    )


def missing_toolchain(requirements: list[str], search_path: str | None) -> list[str]:
    """Build requirements that are not executables on *search_path*.

    Capability expressions such as ``pkgconfig(openssl)`` are not programs and
    are skipped.
    """
    missing: list[str] = []
    for requirement in requirements:
        name = requirement.strip()
        if not name or "(" in name:
            continue
        if shutil.which(name, path=search_path) is None:
            missing.append(name)
    return missing
