import os
import stat
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from stagepack.config import get_settings
from stagepack.logging import clear_context


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    source_root = tmp_path / "src-tree"
    source_root.mkdir()
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("PACKAGE_NAME", "demo")
    monkeypatch.setenv("PACKAGE_VERSION", "1.0")
    monkeypatch.setenv("SOURCE_ROOT", str(source_root))
    monkeypatch.setenv("OUTPUT_DIR", str(tmp_path / "out"))
    monkeypatch.setenv("DESCRIPTOR_PATH", str(tmp_path / "demo.yaml"))
    monkeypatch.setenv("SOURCE_DATE_EPOCH", "0")
    monkeypatch.setenv("LOCK_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("COMMAND_TIMEOUT_SECONDS", "60")
    monkeypatch.delenv("CARGO_HOME", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    clear_context()


@pytest.fixture
def source_root() -> Path:
    return Path(os.environ["SOURCE_ROOT"])


@pytest.fixture
def write_descriptor() -> Callable[..., Path]:
    """Write a descriptor for the configured demo-1.0 target."""

    def _write(**fields: object) -> Path:
        data: dict[str, object] = {"name": "demo", "version": "1.0", "arch": "noarch"}
        data.update(fields)
        path = Path(os.environ["DESCRIPTOR_PATH"])
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path

    return _write


@pytest.fixture
def make_script() -> Callable[[Path, str], Path]:
    def _make(path: Path, body: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make
