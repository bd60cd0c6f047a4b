"""Tests for error hierarchy."""

from stagepack.errors import (
    ArchiveWriteError,
    CommandExecutionError,
    ConfigError,
    DescriptorError,
    ManifestMismatchError,
    PipelineLockedError,
    SourceAccessError,
    StageError,
    StagepackError,
    ToolchainMissingError,
    UnpackError,
)


def test_hierarchy() -> None:
    for cls in (
        ArchiveWriteError,
        CommandExecutionError,
        ConfigError,
        DescriptorError,
        ManifestMismatchError,
        PipelineLockedError,
        SourceAccessError,
        StageError,
        ToolchainMissingError,
        UnpackError,
    ):
        assert issubclass(cls, StagepackError)


def test_source_access_error_is_os_error() -> None:
    assert issubclass(SourceAccessError, OSError)


def test_nothing_is_retryable() -> None:
    assert StagepackError("x").retryable is False
    assert CommandExecutionError("make", 2).retryable is False


def test_command_execution_error_carries_command_and_code() -> None:
    err = CommandExecutionError("cargo build --release", 101, "error[E0425]")
    assert err.command == "cargo build --release"
    assert err.exit_code == 101
    assert "exited 101" in str(err)
    assert "error[E0425]" in str(err)


def test_manifest_mismatch_lists_paths() -> None:
    err = ManifestMismatchError(["/etc/missing.conf"])
    assert err.paths == ["/etc/missing.conf"]
    assert "/etc/missing.conf" in str(err)


def test_stage_error_names_stage() -> None:
    cause = UnpackError("corrupt archive")
    err = StageError("UNPACK", cause)
    assert err.stage == "UNPACK"
    assert err.cause is cause
    assert str(err) == "UNPACK failed: corrupt archive"


def test_toolchain_missing_lists_requirements() -> None:
    err = ToolchainMissingError(["cargo", "rustc"])
    assert err.missing == ["cargo", "rustc"]
    assert "cargo, rustc" in str(err)
