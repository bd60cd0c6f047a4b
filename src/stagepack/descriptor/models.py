"""Package descriptor models."""

from __future__ import annotations

import platform
from enum import StrEnum
from pathlib import PurePosixPath
from string import Template

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stagepack.layout import INSTALL_DIRS


class FileClass(StrEnum):
    PLAIN = "plain"
    DIRECTORY = "directory"
    CONFIG_NO_REPLACE = "config-no-replace"
    DOC = "doc"
    LICENSE = "license"
    GPG_KEY = "gpg-key"


# doc and license entries may name files shipped in the source archive
SOURCE_RELATIVE_CLASSES = {FileClass.DOC, FileClass.LICENSE}


class ManifestEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    path: str
    mode: str | None = None
    file_class: FileClass = Field(alias="class", default=FileClass.PLAIN)

    @field_validator("mode")
    @classmethod
    def _octal_mode(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            parsed = int(value, 8)
        except ValueError as exc:
            raise ValueError(f"mode must be octal, got {value!r}") from exc
        if parsed < 0 or parsed > 0o7777:
            raise ValueError(f"mode out of range: {value!r}")
        return value

    @property
    def is_source_relative(self) -> bool:
        return not self.path.startswith("/")

    @property
    def is_directory(self) -> bool:
        return self.file_class is FileClass.DIRECTORY

    def mode_bits(self, default: int) -> int:
        return int(self.mode, 8) if self.mode is not None else default


class ChangelogEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: str
    author: str
    email: str = ""
    version: str = ""
    changes: list[str] = Field(default_factory=list)


class PackageDescriptor(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str
    version: str
    release: str = "1"
    summary: str = ""
    description: str = ""
    license: list[str] = Field(default_factory=list)
    url: str = ""
    arch: str = Field(default_factory=platform.machine)
    build_requires: list[str] = Field(alias="buildRequires", default_factory=list)
    requires: list[str] = Field(default_factory=list)
    build: list[str] = Field(default_factory=list)
    install: list[str] = Field(default_factory=list)
    files: list[ManifestEntry] = Field(default_factory=list)
    changelog: list[ChangelogEntry] = Field(default_factory=list)

    @field_validator("license", mode="before")
    @classmethod
    def _license_list(cls, value: object) -> object:
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("name", "version", "release", "arch")
    @classmethod
    def _identifier(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("must be non-empty")
        if "/" in clean or any(ch.isspace() for ch in clean):
            raise ValueError(f"must not contain '/' or whitespace: {value!r}")
        return clean

    @field_validator("version", "release")
    @classmethod
    def _no_dash(cls, value: str) -> str:
        if "-" in value:
            raise ValueError(f"must not contain '-': {value!r}")
        return value

    @model_validator(mode="after")
    def _resolve_manifest(self) -> PackageDescriptor:
        macros = {
            **INSTALL_DIRS,
            "NAME": self.name,
            "VERSION": self.version,
            "RELEASE": self.release,
        }
        resolved: list[ManifestEntry] = []
        seen: set[str] = set()
        for entry in self.files:
            try:
                path = Template(entry.path).substitute(macros)
            except (KeyError, ValueError) as exc:
                raise ValueError(f"unresolvable manifest path {entry.path!r}: {exc}") from exc
            pure = PurePosixPath(path)
            if ".." in pure.parts:
                raise ValueError(f"manifest path must not contain '..': {path!r}")
            if not pure.is_absolute() and entry.file_class not in SOURCE_RELATIVE_CLASSES:
                raise ValueError(f"{entry.file_class.value} path must be absolute: {path!r}")
            normalized = str(pure)
            if pure.is_absolute() and normalized == "/":
                raise ValueError("manifest path must not be the filesystem root")
            if normalized in seen:
                raise ValueError(f"duplicate manifest path: {normalized}")
            seen.add(normalized)
            resolved.append(entry.model_copy(update={"path": normalized}))
        self.files = resolved
        claimed: dict[str, str] = {}
        for entry in resolved:
            install_path = self.install_path(entry)
            if install_path in claimed:
                raise ValueError(
                    f"manifest paths {claimed[install_path]!r} and {entry.path!r} "
                    f"both install to {install_path}"
                )
            claimed[install_path] = entry.path
        return self

    def install_path(self, entry: ManifestEntry) -> str:
        """Where *entry* lands on the target system.

        Relative doc/license files are shipped under DOCDIR/<name>/ and
        LICENSEDIR/<name>/ by basename.
        """
        if not entry.is_source_relative:
            return entry.path
        base = INSTALL_DIRS["LICENSEDIR" if entry.file_class is FileClass.LICENSE else "DOCDIR"]
        return str(PurePosixPath(base) / self.name / PurePosixPath(entry.path).name)

    @property
    def target(self) -> str:
        return f"{self.name}-{self.version}"

    @property
    def artifact_id(self) -> str:
        return f"{self.name}-{self.version}-{self.release}.{self.arch}"
