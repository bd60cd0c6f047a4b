"""stagepack exception hierarchy.

All stagepack-specific exceptions inherit from StagepackError,
enabling structured error handling and cleaner catch clauses.
Packaging never retries, so ``retryable`` is False throughout.
"""

from __future__ import annotations


class StagepackError(Exception):
    """Base exception for all stagepack errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ConfigError(StagepackError):
    """Invalid or missing configuration."""


class DescriptorError(StagepackError):
    """Package descriptor could not be read or failed validation."""


class SourceAccessError(StagepackError, OSError):
    """Source tree (or a file inside it) could not be read."""


class ArchiveWriteError(StagepackError):
    """Source archive destination could not be created or written."""


class UnpackError(StagepackError):
    """Source archive is missing, corrupt, or has unsafe members."""


class ToolchainMissingError(StagepackError):
    """A declared build requirement is not available on this host."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"missing build requirements: {', '.join(missing)}")
        self.missing = list(missing)


class CommandExecutionError(StagepackError):
    """A build or install command exited non-zero."""

    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        message = f"command exited {exit_code}: {command}"
        if stderr.strip():
            message = f"{message}\n{stderr.strip()}"
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class ManifestMismatchError(StagepackError):
    """Staged contents do not match the declared file manifest."""

    def __init__(self, paths: list[str], details: list[str] | None = None) -> None:
        lines = details or paths
        super().__init__("manifest mismatch: " + "; ".join(lines))
        self.paths = list(paths)


class PipelineLockedError(StagepackError):
    """Another invocation holds the lock for the same name+version."""


class StageError(StagepackError):
    """A pipeline stage failed; wraps the underlying error."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"{stage} failed: {cause}")
        self.stage = stage
        self.cause = cause


class ArtifactWriteError(StagepackError):
    """Assembled artifact could not be written or read back."""
