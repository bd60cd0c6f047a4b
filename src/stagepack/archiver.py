"""Source snapshot archiver.

Walks a working tree in sorted order, drops excluded paths and writes a
gzip-compressed tarball with normalized member metadata (owner, group and
timestamps), so the same tree always yields the same member set.
"""

from __future__ import annotations

import gzip
import io
import logging
import os
import stat
import tarfile
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import BinaryIO

from stagepack.errors import ArchiveWriteError, SourceAccessError, UnpackError

logger = logging.getLogger(__name__)

# build output, packaging output, version control metadata
DEFAULT_EXCLUSIONS = ("target", "rpm-build", ".git")


@dataclass(frozen=True, slots=True)
class SourceSnapshot:
    root: Path
    exclusions: tuple[str, ...]
    archive_path: Path
    entries: tuple[str, ...]


def _normalize_pattern(pattern: str) -> str:
    clean = pattern.strip().replace("\\", "/")
    while clean.startswith("./"):
        clean = clean[2:]
    return clean.strip("/")


def is_excluded(rel_path: str, exclusions: tuple[str, ...] | list[str]) -> bool:
    """True when *rel_path* falls under an exclusion, as a path prefix or a glob."""
    for raw in exclusions:
        pattern = _normalize_pattern(raw)
        if not pattern:
            continue
        if rel_path == pattern or rel_path.startswith(pattern + "/"):
            return True
        if fnmatch(rel_path, pattern):
            return True
    return False


def _raise_walk_error(exc: OSError) -> None:
    raise SourceAccessError(f"cannot read {exc.filename}: {exc.strerror or exc}") from exc


def collect_entries(
    root: Path,
    exclusions: tuple[str, ...] | list[str],
    *,
    skip: Path | None = None,
) -> list[str]:
    """Return sorted root-relative paths (dirs, files, links) that survive exclusion."""
    if not root.is_dir():
        raise SourceAccessError(f"source root is not a directory: {root}")
    if not os.access(root, os.R_OK | os.X_OK):
        raise SourceAccessError(f"source root is not readable: {root}")

    skip_resolved = skip.resolve() if skip is not None else None
    entries: list[str] = []
    for current, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        rel_current = os.path.relpath(current, root)
        rel_current = "" if rel_current == "." else rel_current.replace(os.sep, "/")

        kept_dirs: list[str] = []
        for name in sorted(dirnames):
            rel = f"{rel_current}/{name}" if rel_current else name
            if is_excluded(rel, exclusions):
                continue
            entries.append(rel)
            # symlinked directories are archived as links, never followed
            if not os.path.islink(os.path.join(current, name)):
                kept_dirs.append(name)
        dirnames[:] = kept_dirs

        for name in sorted(filenames):
            rel = f"{rel_current}/{name}" if rel_current else name
            if is_excluded(rel, exclusions):
                continue
            full = Path(current) / name
            if skip_resolved is not None and full.resolve() == skip_resolved:
                continue
            entries.append(rel)
    return sorted(entries)


def _tar_info(root: Path, rel_path: str, mtime: int) -> tarfile.TarInfo:
    full = root / rel_path
    try:
        st = full.lstat()
    except OSError as exc:
        raise SourceAccessError(f"cannot stat {rel_path}: {exc}") from exc

    info = tarfile.TarInfo(rel_path)
    info.mtime = mtime
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    if stat.S_ISLNK(st.st_mode):
        info.type = tarfile.SYMTYPE
        info.linkname = os.readlink(full)
        info.mode = 0o777
    elif stat.S_ISDIR(st.st_mode):
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
    elif stat.S_ISREG(st.st_mode):
        info.type = tarfile.REGTYPE
        info.size = st.st_size
        info.mode = st.st_mode & 0o777
    else:
        raise SourceAccessError(f"unsupported file type in source tree: {rel_path}")
    return info


def _add_entry(tf: tarfile.TarFile, root: Path, rel_path: str, mtime: int) -> None:
    info = _tar_info(root, rel_path, mtime)
    if info.type != tarfile.REGTYPE:
        tf.addfile(info)
        return
    try:
        src = (root / rel_path).open("rb")
    except OSError as exc:
        raise SourceAccessError(f"cannot read {rel_path}: {exc}") from exc
    with src:
        data = _read_all(src, rel_path)
    # size is taken from the bytes actually read, not the earlier stat
    info.size = len(data)
    tf.addfile(info, fileobj=io.BytesIO(data))


def _read_all(src: BinaryIO, rel_path: str) -> bytes:
    try:
        return src.read()
    except OSError as exc:
        raise SourceAccessError(f"cannot read {rel_path}: {exc}") from exc


def clean_archive(archive_path: Path) -> None:
    """Remove a previous archive for the same name+version, if any."""
    try:
        archive_path.unlink(missing_ok=True)
    except OSError as exc:
        raise ArchiveWriteError(f"cannot remove stale archive {archive_path}: {exc}") from exc


def snapshot(
    root: Path,
    exclusions: tuple[str, ...] | list[str],
    archive_path: Path,
    *,
    mtime: int = 0,
) -> SourceSnapshot:
    """Archive *root* into *archive_path*, skipping excluded entries."""
    exclusion_set = tuple(exclusions)
    if not archive_path.parent.is_dir():
        raise ArchiveWriteError(f"archive directory does not exist: {archive_path.parent}")

    entries = collect_entries(root, exclusion_set, skip=archive_path)
    try:
        out_f = archive_path.open("wb")
    except OSError as exc:
        raise ArchiveWriteError(f"cannot create archive {archive_path}: {exc}") from exc

    try:
        with out_f:
            with gzip.GzipFile(filename="", mode="wb", fileobj=out_f, mtime=mtime) as gz:
                with tarfile.open(fileobj=gz, mode="w|", format=tarfile.PAX_FORMAT) as tf:
                    for rel_path in entries:
                        _add_entry(tf, root, rel_path, mtime)
    except SourceAccessError:
        raise
    except OSError as exc:
        raise ArchiveWriteError(f"failed writing archive {archive_path}: {exc}") from exc

    logger.info("archived %d entries from %s into %s", len(entries), root, archive_path)
    return SourceSnapshot(
        root=root,
        exclusions=exclusion_set,
        archive_path=archive_path,
        entries=tuple(entries),
    )


def list_members(archive_path: Path) -> list[str]:
    if not archive_path.is_file():
        raise UnpackError(f"archive not found: {archive_path}")
    try:
        with tarfile.open(archive_path, mode="r:gz") as tf:
            return sorted(member.name for member in tf.getmembers())
    except (tarfile.TarError, OSError, EOFError) as exc:
        raise UnpackError(f"corrupt archive {archive_path}: {exc}") from exc
