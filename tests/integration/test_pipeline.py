"""End-to-end runs of the archive + package pipeline."""

from __future__ import annotations

import json
import os
import tarfile
import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from stagepack import packager, runs
from stagepack.archiver import list_members, snapshot
from stagepack.artifact import payload_members, read_metadata
from stagepack.config import get_settings
from stagepack.descriptor.loader import load_descriptor
from stagepack.errors import (
    CommandExecutionError,
    DescriptorError,
    ManifestMismatchError,
    PipelineLockedError,
    StageError,
    ToolchainMissingError,
)
from stagepack.lock import target_lock
from stagepack.pipeline import PipelineResult, layout_for, run_pipeline
from stagepack.runs import read_state

REPO_ROOT = Path(__file__).resolve().parents[2]

DEMO_INSTALL = ["mkdir -p $STAGE/bin", "echo x > $STAGE/bin/tool"]
DEMO_FILES = [{"path": "/bin/tool", "class": "plain"}]

WAIT_SCRIPT = """\
touch "$1/started-$$"
i=0
while [ ! -f "$1/release" ]; do
  sleep 0.05
  i=$((i+1))
  [ "$i" -gt 400 ] && exit 1
done
exit 0
"""


def _state(result: PipelineResult) -> dict[str, str]:
    return read_state(layout_for(get_settings()).run_dir(result.run_id))


def test_successful_run_produces_artifact(
    source_root: Path, write_descriptor: Callable[..., Path]
) -> None:
    (source_root / "tool.c").write_text("int main(void) { return 0; }\n")
    write_descriptor(build=["true"], install=DEMO_INSTALL, files=DEMO_FILES)

    result = run_pipeline(get_settings())

    assert result.artifact.files() == ["/bin/tool"]
    assert payload_members(result.artifact.path) == ["/bin/tool"]
    assert list_members(result.snapshot.archive_path) == ["tool.c"]
    assert _state(result)["state"] == "DONE"
    metadata = read_metadata(result.artifact.path)
    assert metadata["name"] == "demo"


def test_missing_manifest_entry_fails_validate(write_descriptor: Callable[..., Path]) -> None:
    files = [*DEMO_FILES, {"path": "/etc/missing.conf", "class": "config-no-replace"}]
    write_descriptor(build=["true"], install=DEMO_INSTALL, files=files)
    layout = layout_for(get_settings())

    with pytest.raises(StageError) as excinfo:
        run_pipeline(get_settings())

    assert excinfo.value.stage == "VALIDATE"
    assert isinstance(excinfo.value.cause, ManifestMismatchError)
    assert "/etc/missing.conf" in excinfo.value.cause.paths
    assert list(layout.artifacts_dir.iterdir()) == []
    run_dirs = list(layout.runs_dir.iterdir())
    assert len(run_dirs) == 1
    state = read_state(run_dirs[0])
    assert state["state"] == "FAILED"
    assert state["detail"].startswith("VALIDATE: manifest mismatch")
    records = [json.loads(line) for line in (run_dirs[0] / "run.log").read_text().splitlines()]
    assert any("stage VALIDATE failed" in record["event"] for record in records)
    assert all(record["run_id"] == run_dirs[0].name for record in records)


def test_install_failure_stops_before_validate(write_descriptor: Callable[..., Path]) -> None:
    install = ["mkdir -p $STAGE/bin", "false", "echo x > $STAGE/bin/tool"]
    write_descriptor(build=["true"], install=install, files=DEMO_FILES)
    layout = layout_for(get_settings())

    with pytest.raises(StageError) as excinfo:
        run_pipeline(get_settings())

    assert excinfo.value.stage == "INSTALL"
    assert isinstance(excinfo.value.cause, CommandExecutionError)
    assert not layout.staged("/bin/tool").exists()
    assert list(layout.artifacts_dir.iterdir()) == []


def test_missing_toolchain_fails_before_clean(write_descriptor: Callable[..., Path]) -> None:
    write_descriptor(buildRequires=["stagepack-no-such-tool"], files=[])
    layout = layout_for(get_settings())
    sentinel = layout.staged("/keep")
    sentinel.parent.mkdir(parents=True)
    sentinel.write_text("previous run")

    with pytest.raises(StageError) as excinfo:
        run_pipeline(get_settings())

    assert excinfo.value.stage == "PREFLIGHT"
    assert isinstance(excinfo.value.cause, ToolchainMissingError)
    assert sentinel.read_text() == "previous run"
    assert not layout.archive_path.exists()


def test_descriptor_identity_mismatch(write_descriptor: Callable[..., Path]) -> None:
    write_descriptor(version="2.0")

    with pytest.raises(StageError) as excinfo:
        run_pipeline(get_settings())

    assert excinfo.value.stage == "PREFLIGHT"
    assert isinstance(excinfo.value.cause, DescriptorError)


def test_states_advance_linearly(
    monkeypatch: pytest.MonkeyPatch, write_descriptor: Callable[..., Path]
) -> None:
    write_descriptor(build=["true"], install=DEMO_INSTALL, files=DEMO_FILES)
    seen: list[str] = []
    original = runs.write_state

    def _recording(run_dir: Path, run_id: str, state: str, detail: str = "") -> Path:
        seen.append(state)
        return original(run_dir, run_id, state, detail)

    monkeypatch.setattr(runs, "write_state", _recording)

    run_pipeline(get_settings())

    assert seen == [
        "PREFLIGHT",
        "ARCHIVE",
        "CLEAN",
        "UNPACK",
        "BUILD",
        "INSTALL",
        "VALIDATE",
        "ASSEMBLE",
        "DONE",
    ]


def test_unparseable_command_fails_before_archive(
    write_descriptor: Callable[..., Path],
) -> None:
    write_descriptor(build=["make | tee build.log"], install=DEMO_INSTALL, files=DEMO_FILES)
    layout = layout_for(get_settings())

    with pytest.raises(StageError) as excinfo:
        run_pipeline(get_settings())

    assert excinfo.value.stage == "PREFLIGHT"
    assert isinstance(excinfo.value.cause, DescriptorError)
    assert not layout.archive_path.exists()


def test_staged_symlink_is_packaged_as_link(
    tmp_path: Path, write_descriptor: Callable[..., Path]
) -> None:
    secret = tmp_path / "host-secret"
    secret.write_text("host only\n")
    install = ["mkdir -p $STAGE/bin", f"ln -s {secret} $STAGE/bin/tool"]
    write_descriptor(build=["true"], install=install, files=DEMO_FILES)

    result = run_pipeline(get_settings())

    with tarfile.open(result.artifact.path, "r:gz") as tf:
        member = tf.getmember("payload/bin/tool")
        assert member.issym()
        assert member.linkname == str(secret)
        assert member.size == 0
    assert read_metadata(result.artifact.path)["symlinks"] == {"/bin/tool": str(secret)}


def test_rerun_starts_from_clean_staging(write_descriptor: Callable[..., Path]) -> None:
    write_descriptor(build=["true"], install=DEMO_INSTALL, files=DEMO_FILES)
    first = run_pipeline(get_settings())
    layout = layout_for(get_settings())
    stray = layout.staged("/bin/stray")
    stray.write_text("left behind")

    second = run_pipeline(get_settings())

    assert not stray.exists()
    assert second.run_id != first.run_id
    assert second.artifact.path == first.artifact.path
    assert payload_members(second.artifact.path) == ["/bin/tool"]


def test_held_lock_refuses_second_run(write_descriptor: Callable[..., Path]) -> None:
    write_descriptor(build=["true"], install=DEMO_INSTALL, files=DEMO_FILES)
    layout = layout_for(get_settings())
    layout.prepare()
    sentinel = layout.staged("/bin/tool")
    sentinel.parent.mkdir(parents=True)
    sentinel.write_text("in progress")

    with target_lock(layout.lock_path):
        with pytest.raises(StageError) as excinfo:
            run_pipeline(get_settings())

    assert excinfo.value.stage == "PREFLIGHT"
    assert isinstance(excinfo.value.cause, PipelineLockedError)
    assert list(layout.runs_dir.iterdir()) == []

    assert sentinel.read_text() == "in progress"
    assert not layout.archive_path.exists()


def test_overlapping_runs_refused_then_serialized(
    tmp_path: Path,
    write_descriptor: Callable[..., Path],
    make_script: Callable[[Path, str], Path],
) -> None:
    signals = tmp_path / "signals"
    signals.mkdir()
    script = make_script(tmp_path / "bin" / "wait-for-release", WAIT_SCRIPT)
    write_descriptor(build=[f"{script} {signals}"], install=DEMO_INSTALL, files=DEMO_FILES)
    settings = get_settings()
    results: dict[str, PipelineResult] = {}
    errors: list[Exception] = []

    def _run(key: str, lock_timeout: float) -> None:
        try:
            run_settings = settings.model_copy(update={"lock_timeout_seconds": lock_timeout})
            results[key] = run_pipeline(run_settings)
        except Exception as exc:
            errors.append(exc)

    first = threading.Thread(target=_run, args=("first", 0.0))
    first.start()
    deadline = time.monotonic() + 10
    while not list(signals.glob("started-*")) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert list(signals.glob("started-*")), "first run never reached BUILD"

    with pytest.raises(StageError, match="PREFLIGHT failed"):
        run_pipeline(settings)

    second = threading.Thread(target=_run, args=("second", 20.0))
    second.start()
    time.sleep(0.5)
    assert second.is_alive()
    assert len(list(signals.glob("started-*"))) == 1

    (signals / "release").touch()
    first.join(20)
    second.join(20)

    assert errors == []
    assert set(results) == {"first", "second"}
    assert len(list(signals.glob("started-*"))) == 2
    for result in results.values():
        assert _state(result)["state"] == "DONE"


def test_packager_accepts_prebuilt_archive(
    tmp_path: Path, write_descriptor: Callable[..., Path]
) -> None:
    tree = tmp_path / "other-tree"
    tree.mkdir()
    (tree / "data.txt").write_text("payload\n")
    archive = tmp_path / "demo-1.0.tar.gz"
    snapshot(tree, [], archive)
    descriptor = load_descriptor(
        write_descriptor(
            build=["true"],
            install=["mkdir -p $STAGE/usr/share/demo", "cp data.txt $STAGE/usr/share/demo/"],
            files=[{"path": "/usr/share/demo/data.txt"}],
        )
    )

    artifact = packager.build(archive, descriptor)

    assert artifact.files() == ["/usr/share/demo/data.txt"]
    with tarfile.open(artifact.path, "r:gz") as tf:
        member = tf.extractfile("payload/usr/share/demo/data.txt")
        assert member is not None
        assert member.read() == b"payload\n"


RUST_DNF_SOURCES = {
    "Cargo.toml": '[package]\nname = "rust-dnf"\nversion = "0.1.0"\n',
    "src/main.rs": 'fn main() { println!("rust-dnf"); }\n',
    "rust-dnf.toml": "[main]\ngpgcheck = true\n",
    "RPM-GPG-KEY-rust-dnf": "-----BEGIN PGP PUBLIC KEY BLOCK-----\n",
    "LICENSE-MIT": "MIT License\n",
    "LICENSE-APACHE": "Apache License 2.0\n",
    "README.md": "# rust-dnf\n",
    "target/debug/stale": "old build output\n",
}

FAKE_CARGO = """\
mkdir -p target/release "$CARGO_HOME"
printf '#!/bin/sh\\necho rust-dnf\\n' > target/release/rust-dnf
echo "$CARGO_HOME" > "$CARGO_HOME/used-by-build"
"""


def test_rust_dnf_descriptor_layout(
    tmp_path: Path,
    source_root: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_script: Callable[[Path, str], Path],
) -> None:
    for rel, content in RUST_DNF_SOURCES.items():
        path = source_root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    fake_bin = tmp_path / "fake-bin"
    make_script(fake_bin / "cargo", FAKE_CARGO)
    make_script(fake_bin / "rustc", "exit 0\n")
    monkeypatch.setenv("PATH", f"{fake_bin}{os.pathsep}{os.environ['PATH']}")
    monkeypatch.setenv("PACKAGE_NAME", "rust-dnf")
    monkeypatch.setenv("PACKAGE_VERSION", "0.1.0")
    monkeypatch.setenv("DESCRIPTOR_PATH", str(REPO_ROOT / "packaging" / "rust-dnf.yaml"))
    monkeypatch.setenv("OUTPUT_DIR", str(source_root / "rpm-build"))
    get_settings.cache_clear()

    result = run_pipeline(get_settings())

    members = list_members(result.snapshot.archive_path)
    assert "Cargo.toml" in members
    assert not any(m.startswith(("target", "rpm-build")) for m in members)
    assert payload_members(result.artifact.path) == [
        "/etc/pki/rpm-gpg/RPM-GPG-KEY-rust-dnf",
        "/etc/rust-dnf",
        "/etc/rust-dnf/config.toml",
        "/etc/rust-dnf/repos.d",
        "/usr/bin/rust-dnf",
        "/usr/share/doc/rust-dnf/README.md",
        "/usr/share/licenses/rust-dnf/LICENSE-APACHE",
        "/usr/share/licenses/rust-dnf/LICENSE-MIT",
        "/var/cache/rust-dnf",
        "/var/lib/rust-dnf",
    ]
    by_path = {entry.path: entry for entry in result.artifact.entries}
    assert by_path["/usr/bin/rust-dnf"].mode == "0755"
    assert by_path["/etc/rust-dnf/config.toml"].config_noreplace is True
    assert by_path["/etc/rust-dnf/config.toml"].mode == "0644"
    assert by_path["/etc/pki/rpm-gpg/RPM-GPG-KEY-rust-dnf"].kind == "gpg-key"

    layout = layout_for(get_settings())
    assert (layout.cache_dir / "used-by-build").read_text().strip() == str(layout.cache_dir)
    assert result.artifact.path.name == f"rust-dnf-0.1.0-1.{result.artifact.arch}.tar.gz"
