"""Package descriptor models, loading and command parsing."""

from stagepack.descriptor.commands import CommandSpec, parse_command, parse_commands
from stagepack.descriptor.loader import check_identity, load_descriptor, parse_descriptor
from stagepack.descriptor.models import (
    ChangelogEntry,
    FileClass,
    ManifestEntry,
    PackageDescriptor,
)

__all__ = [
    "ChangelogEntry",
    "CommandSpec",
    "FileClass",
    "ManifestEntry",
    "PackageDescriptor",
    "check_identity",
    "load_descriptor",
    "parse_command",
    "parse_commands",
    "parse_descriptor",
]
