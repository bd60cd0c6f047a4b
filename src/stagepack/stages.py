"""Packager stages: one function per step, all state passed explicitly."""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import tarfile
from enum import StrEnum
from pathlib import Path, PurePosixPath

from stagepack.archiver import list_members
from stagepack.artifact import artifact_path
from stagepack.descriptor.commands import CommandSpec
from stagepack.descriptor.models import ManifestEntry, PackageDescriptor
from stagepack.environment import BuildEnvironment
from stagepack.errors import ManifestMismatchError, StagepackError, UnpackError
from stagepack.layout import INSTALL_DIRS, BuildLayout
from stagepack.process import CommandResult, run_sequence

logger = logging.getLogger(__name__)


class Stage(StrEnum):
    PREFLIGHT = "PREFLIGHT"
    CLEAN = "CLEAN"
    ARCHIVE = "ARCHIVE"
    UNPACK = "UNPACK"
    BUILD = "BUILD"
    INSTALL = "INSTALL"
    VALIDATE = "VALIDATE"
    ASSEMBLE = "ASSEMBLE"
    DONE = "DONE"
    FAILED = "FAILED"


def _remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


def clean(
    layout: BuildLayout,
    descriptor: PackageDescriptor,
    *,
    keep_cache: bool = False,
) -> None:
    """Remove the previous run's build dir, staging root and artifact. Idempotent."""
    targets = [layout.build_dir, layout.staging_root]
    if not keep_cache:
        targets.append(layout.cache_dir)
    previous = artifact_path(layout, descriptor)
    targets.extend([previous, previous.with_name(previous.name + ".partial")])
    for target in targets:
        try:
            _remove_tree(target)
        except OSError as exc:
            raise StagepackError(f"cannot remove {target}: {exc}") from exc
    logger.info("cleaned previous outputs for %s", layout.target)


def _check_member(member: tarfile.TarInfo) -> None:
    pure = PurePosixPath(member.name)
    if pure.is_absolute() or ".." in pure.parts:
        raise UnpackError(f"unsafe archive member: {member.name}")
    if member.issym() or member.islnk():
        # symlinks resolve against their directory, hard links against the archive root
        base = str(pure.parent) if member.issym() else ""
        resolved = posixpath.normpath(posixpath.join(base, member.linkname))
        if member.linkname.startswith("/") or resolved == ".." or resolved.startswith("../"):
            raise UnpackError(f"unsafe link in archive: {member.name} -> {member.linkname}")
    if not (member.isfile() or member.isdir() or member.issym() or member.islnk()):
        raise UnpackError(f"unsupported archive member type: {member.name}")


def unpack(archive_path: Path, layout: BuildLayout) -> Path:
    """Extract the source archive into a fresh build directory."""
    list_members(archive_path)
    destination = layout.source_dir
    if destination.exists():
        shutil.rmtree(destination)
    destination.mkdir(parents=True)
    try:
        with tarfile.open(archive_path, mode="r:gz") as tf:
            members = tf.getmembers()
            for member in members:
                _check_member(member)
            tf.extractall(destination, members=members, filter="data")
    except UnpackError:
        raise
    except (tarfile.TarError, OSError, EOFError) as exc:
        raise UnpackError(f"cannot extract {archive_path}: {exc}") from exc
    logger.info("unpacked %d members into %s", len(members), destination)
    return destination


def build(
    commands: list[CommandSpec],
    environment: BuildEnvironment,
    *,
    log_dir: Path | None = None,
) -> list[CommandResult]:
    environment.cache_dir.mkdir(parents=True, exist_ok=True)
    return run_sequence(commands, environment, log_dir=log_dir, label="build")


def install(
    commands: list[CommandSpec],
    environment: BuildEnvironment,
    layout: BuildLayout,
    *,
    log_dir: Path | None = None,
) -> list[CommandResult]:
    layout.staging_root.mkdir(parents=True, exist_ok=True)
    environment.cache_dir.mkdir(parents=True, exist_ok=True)
    return run_sequence(commands, environment, log_dir=log_dir, label="install")


def _covered(install_path: str, exact: set[str], directories: list[str]) -> bool:
    if install_path in exact:
        return True
    return any(install_path.startswith(directory.rstrip("/") + "/") for directory in directories)


def unpackaged_files(descriptor: PackageDescriptor, layout: BuildLayout) -> list[str]:
    """Staged files and symlinks that no manifest entry claims."""
    exact = {entry.path for entry in descriptor.files if not entry.is_source_relative}
    directories = [entry.path for entry in descriptor.files if entry.is_directory]
    found: list[str] = []
    root = layout.staging_root
    if not root.is_dir():
        return found
    for current, dirnames, filenames in os.walk(root):
        dirnames.sort()
        # symlinked directories are not descended into, so they count as files
        links = [name for name in dirnames if (Path(current) / name).is_symlink()]
        for name in sorted([*filenames, *links]):
            rel = (Path(current) / name).relative_to(root).as_posix()
            install_path = f"/{rel}"
            if not _covered(install_path, exact, directories):
                found.append(install_path)
    return found


def _is_runtime_state(install_path: str) -> bool:
    state_root = INSTALL_DIRS["LOCALSTATEDIR"]
    return install_path.startswith(state_root + "/")


def _check_entry(entry: ManifestEntry, layout: BuildLayout) -> str | None:
    """Return a mismatch description for *entry*, or None when it is staged correctly."""
    if entry.is_source_relative:
        location = layout.source_dir / entry.path
    elif layout.escapes_staging(entry.path):
        return f"{entry.path}: escapes staging root"
    else:
        location = layout.staged(entry.path)

    if not os.path.lexists(location):
        return f"{entry.path}: not produced ({entry.file_class.value})"
    if location.is_symlink():
        # links are packaged as links; only installed non-directory entries may be one
        if entry.is_directory:
            return f"{entry.path}: expected directory, found symlink"
        if entry.is_source_relative:
            return f"{entry.path}: expected file, found symlink"
        return None
    if entry.is_directory:
        if not location.is_dir():
            return f"{entry.path}: expected directory"
        if _is_runtime_state(entry.path) and any(location.iterdir()):
            return f"{entry.path}: runtime state directory must be empty"
        return None
    if not location.is_file():
        return f"{entry.path}: expected file"
    return None


def validate(descriptor: PackageDescriptor, layout: BuildLayout) -> list[str]:
    """Check staged contents against the manifest.

    Every manifested path must exist with its declared type; absolute paths
    are looked up under the staging root, relative doc/license paths under
    the unpacked source tree. Symlinks are checked without being followed.
    Returns the staged files no entry claims.
    """
    missing: list[str] = []
    details: list[str] = []
    for entry in descriptor.files:
        problem = _check_entry(entry, layout)
        if problem is not None:
            missing.append(entry.path)
            details.append(problem)
    if missing:
        raise ManifestMismatchError(missing, details)

    extra = unpackaged_files(descriptor, layout)
    for path in extra:
        logger.warning("installed but unpackaged file: %s", path)
    return extra
