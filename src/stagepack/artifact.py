"""Artifact assembly: staged files plus metadata into one installable bundle."""

from __future__ import annotations

import gzip
import hashlib
import io
import json
import logging
import os
import tarfile
from dataclasses import asdict, dataclass
from pathlib import Path, PurePosixPath
from typing import cast

from stagepack.descriptor.models import FileClass, ManifestEntry, PackageDescriptor
from stagepack.errors import ArtifactWriteError, ManifestMismatchError
from stagepack.layout import BuildLayout

logger = logging.getLogger(__name__)

METADATA_MEMBER = "metadata.json"
PAYLOAD_PREFIX = "payload"


@dataclass(frozen=True, slots=True)
class ArtifactEntry:
    path: str
    kind: str
    mode: str
    config_noreplace: bool = False
    size: int = 0
    sha256: str = ""
    link_target: str = ""


@dataclass(frozen=True, slots=True)
class Artifact:
    name: str
    version: str
    release: str
    arch: str
    path: Path
    entries: tuple[ArtifactEntry, ...]

    @property
    def identifier(self) -> str:
        return f"{self.name}-{self.version}-{self.release}.{self.arch}"

    def files(self) -> list[str]:
        return [entry.path for entry in self.entries if entry.kind != FileClass.DIRECTORY.value]


@dataclass(frozen=True, slots=True)
class _PlannedEntry:
    entry: ArtifactEntry
    source: Path


def artifact_path(layout: BuildLayout, descriptor: PackageDescriptor) -> Path:
    return layout.artifacts_dir / f"{descriptor.artifact_id}.tar.gz"


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _file_entry(
    install_path: str, source: Path, kind: str, mode: int, noreplace: bool
) -> _PlannedEntry:
    return _PlannedEntry(
        entry=ArtifactEntry(
            path=install_path,
            kind=kind,
            mode=f"{mode:04o}",
            config_noreplace=noreplace,
            size=source.stat().st_size,
            sha256=_sha256_file(source),
        ),
        source=source,
    )


def _link_entry(install_path: str, source: Path, kind: str, noreplace: bool) -> _PlannedEntry:
    # the link itself is packaged; its target is never read
    return _PlannedEntry(
        entry=ArtifactEntry(
            path=install_path,
            kind=kind,
            mode="0777",
            config_noreplace=noreplace,
            link_target=os.readlink(source),
        ),
        source=source,
    )


def _dir_entry(install_path: str, source: Path, mode: int) -> _PlannedEntry:
    return _PlannedEntry(
        entry=ArtifactEntry(
            path=install_path, kind=FileClass.DIRECTORY.value, mode=f"{mode:04o}"
        ),
        source=source,
    )


def _explicit_entry(
    descriptor: PackageDescriptor, layout: BuildLayout, entry: ManifestEntry
) -> _PlannedEntry:
    install_path = descriptor.install_path(entry)
    if entry.is_source_relative:
        source = layout.source_dir / entry.path
    else:
        if layout.escapes_staging(entry.path):
            raise ManifestMismatchError([entry.path], [f"{entry.path}: escapes staging root"])
        source = layout.staged(entry.path)
    if not os.path.lexists(source):
        raise ManifestMismatchError([entry.path], [f"{entry.path}: missing at assembly"])

    noreplace = entry.file_class is FileClass.CONFIG_NO_REPLACE
    if source.is_symlink():
        if entry.is_directory or entry.is_source_relative:
            raise ManifestMismatchError([entry.path], [f"{entry.path}: unexpected symlink"])
        return _link_entry(install_path, source, entry.file_class.value, noreplace)
    mode = entry.mode_bits(source.lstat().st_mode & 0o7777)
    if entry.is_directory:
        return _dir_entry(install_path, source, mode)
    return _file_entry(install_path, source, entry.file_class.value, mode, noreplace)


def _expand_directory(
    planned: dict[str, _PlannedEntry], install_root: str, source: Path
) -> None:
    """Add the contents of a manifested directory not claimed by another entry."""
    for current, dirnames, filenames in os.walk(source):
        dirnames.sort()
        base = PurePosixPath(install_root) / Path(current).relative_to(source).as_posix()
        for name in [*dirnames, *sorted(filenames)]:
            install_path = str(base / name)
            if install_path in planned:
                continue
            child = Path(current) / name
            if child.is_symlink():
                planned[install_path] = _link_entry(
                    install_path, child, FileClass.PLAIN.value, False
                )
            elif child.is_dir():
                planned[install_path] = _dir_entry(
                    install_path, child, child.lstat().st_mode & 0o7777
                )
            else:
                planned[install_path] = _file_entry(
                    install_path,
                    child,
                    FileClass.PLAIN.value,
                    child.lstat().st_mode & 0o7777,
                    False,
                )


def _plan_entries(descriptor: PackageDescriptor, layout: BuildLayout) -> list[_PlannedEntry]:
    planned: dict[str, _PlannedEntry] = {}
    for entry in descriptor.files:
        item = _explicit_entry(descriptor, layout, entry)
        if item.entry.path in planned:
            raise ManifestMismatchError(
                [entry.path], [f"{entry.path}: install path {item.entry.path} already claimed"]
            )
        planned[item.entry.path] = item

    # directory contents are owned by the directory unless manifested separately
    for entry in descriptor.files:
        item = planned[descriptor.install_path(entry)]
        if entry.is_directory and not item.entry.link_target:
            _expand_directory(planned, item.entry.path, item.source)

    return [planned[key] for key in sorted(planned)]


def build_metadata(
    descriptor: PackageDescriptor,
    entries: list[ArtifactEntry],
    *,
    source_archive: str,
    build_time: int,
) -> dict[str, object]:
    return {
        "name": descriptor.name,
        "version": descriptor.version,
        "release": descriptor.release,
        "arch": descriptor.arch,
        "summary": descriptor.summary,
        "description": descriptor.description,
        "url": descriptor.url,
        "license": list(descriptor.license),
        "requires": list(descriptor.requires),
        "build_requires": list(descriptor.build_requires),
        "source_archive": source_archive,
        "build_time": build_time,
        "files": [asdict(entry) for entry in entries],
        "config_noreplace": [entry.path for entry in entries if entry.config_noreplace],
        "gpg_keys": [entry.path for entry in entries if entry.kind == FileClass.GPG_KEY.value],
        "symlinks": {entry.path: entry.link_target for entry in entries if entry.link_target},
        "changelog": [item.model_dump() for item in descriptor.changelog],
    }


def _tar_info(name: str, mode: int, mtime: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.mode = mode
    info.mtime = mtime
    info.uid = 0
    info.gid = 0
    info.uname = "root"
    info.gname = "root"
    return info


def assemble(
    descriptor: PackageDescriptor,
    layout: BuildLayout,
    *,
    mtime: int = 0,
) -> Artifact:
    """Write the artifact bundle for *descriptor* from the staging root."""
    planned = _plan_entries(descriptor, layout)
    entries = [item.entry for item in planned]
    metadata = build_metadata(
        descriptor,
        entries,
        source_archive=layout.archive_path.name,
        build_time=mtime,
    )
    destination = artifact_path(layout, descriptor)
    partial = destination.with_name(destination.name + ".partial")
    encoded = json.dumps(metadata, indent=2, sort_keys=True).encode("utf-8")

    try:
        with partial.open("wb") as out_f:
            with gzip.GzipFile(filename="", mode="wb", fileobj=out_f, mtime=mtime) as gz:
                with tarfile.open(fileobj=gz, mode="w|", format=tarfile.PAX_FORMAT) as tf:
                    meta_info = _tar_info(METADATA_MEMBER, 0o644, mtime)
                    meta_info.size = len(encoded)
                    tf.addfile(meta_info, fileobj=io.BytesIO(encoded))
                    for item in planned:
                        member = f"{PAYLOAD_PREFIX}{item.entry.path}"
                        info = _tar_info(member, int(item.entry.mode, 8), mtime)
                        if item.entry.link_target:
                            info.type = tarfile.SYMTYPE
                            info.linkname = item.entry.link_target
                            tf.addfile(info)
                            continue
                        if item.entry.kind == FileClass.DIRECTORY.value:
                            info.type = tarfile.DIRTYPE
                            tf.addfile(info)
                            continue
                        info.size = item.entry.size
                        with item.source.open("rb") as src:
                            tf.addfile(info, fileobj=src)
        os.replace(partial, destination)
    except OSError as exc:
        partial.unlink(missing_ok=True)
        raise ArtifactWriteError(f"cannot write artifact {destination}: {exc}") from exc

    logger.info(
        "assembled %s with %d entries (%d config-noreplace)",
        destination.name,
        len(entries),
        sum(1 for entry in entries if entry.config_noreplace),
    )
    return Artifact(
        name=descriptor.name,
        version=descriptor.version,
        release=descriptor.release,
        arch=descriptor.arch,
        path=destination,
        entries=tuple(entries),
    )


def read_metadata(path: Path) -> dict[str, object]:
    """Return the embedded metadata of an assembled artifact."""
    try:
        with tarfile.open(path, mode="r:gz") as tf:
            member = tf.extractfile(METADATA_MEMBER)
            if member is None:
                raise ArtifactWriteError(f"artifact has no {METADATA_MEMBER}: {path}")
            decoded = json.loads(member.read().decode("utf-8"))
    except KeyError as exc:
        raise ArtifactWriteError(f"artifact has no {METADATA_MEMBER}: {path}") from exc
    except (tarfile.TarError, OSError, EOFError, json.JSONDecodeError) as exc:
        raise ArtifactWriteError(f"cannot read artifact {path}: {exc}") from exc
    return cast(dict[str, object], decoded if isinstance(decoded, dict) else {})


def payload_members(path: Path) -> list[str]:
    """Installed paths carried by an artifact, in archive order."""
    with tarfile.open(path, mode="r:gz") as tf:
        return [
            member.name[len(PAYLOAD_PREFIX):]
            for member in tf.getmembers()
            if member.name.startswith(PAYLOAD_PREFIX + "/")
        ]
