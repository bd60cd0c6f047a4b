"""Load package descriptors from YAML files."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from stagepack.descriptor.models import PackageDescriptor
from stagepack.errors import DescriptorError

logger = logging.getLogger(__name__)


def _format_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "descriptor"
        parts.append(f"{location}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


def parse_descriptor(raw: str, *, origin: str = "<string>") -> PackageDescriptor:
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise DescriptorError(f"{origin}: invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise DescriptorError(f"{origin}: descriptor must be a mapping")
    try:
        return PackageDescriptor.model_validate(data)
    except ValidationError as exc:
        raise DescriptorError(f"{origin}: {_format_validation_error(exc)}") from exc


def load_descriptor(path: Path) -> PackageDescriptor:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DescriptorError(f"cannot read descriptor {path}: {exc}") from exc
    descriptor = parse_descriptor(raw, origin=str(path))
    logger.debug("loaded descriptor %s from %s", descriptor.artifact_id, path)
    return descriptor


def check_identity(descriptor: PackageDescriptor, name: str, version: str) -> None:
    """Reject a descriptor whose name/version disagrees with the configured pair."""
    if descriptor.name != name or descriptor.version != version:
        raise DescriptorError(
            f"descriptor declares {descriptor.target}, configuration expects {name}-{version}"
        )
