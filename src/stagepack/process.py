"""Controlled process execution for build and install commands."""

from __future__ import annotations

import logging
import resource
import shutil
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from stagepack.descriptor.commands import CommandSpec
from stagepack.environment import BuildEnvironment, ResourceLimits
from stagepack.errors import CommandExecutionError

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127
REDIRECT_FAILED_EXIT_CODE = 1


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    ok: bool
    stdout: str
    stderr: str
    duration_ms: int
    log_path: str = ""


def _truncate_text(value: str, max_bytes: int) -> tuple[str, bool]:
    encoded = value.encode("utf-8", errors="ignore")
    if len(encoded) <= max_bytes:
        return value, False
    clipped = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return clipped, True


def _to_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return value


def _limit_setter(limits: ResourceLimits) -> Callable[[], None] | None:
    if limits.max_memory_mb <= 0 and limits.max_cpu_seconds <= 0:
        return None

    def _apply() -> None:
        if limits.max_memory_mb > 0:
            size = limits.max_memory_mb * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_AS, (size, size))
        if limits.max_cpu_seconds > 0:
            cpu = limits.max_cpu_seconds
            resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu))

    return _apply


def _write_full_log(log_path: Path | None, spec: CommandSpec, stdout: str, stderr: str) -> str:
    if log_path is None:
        return ""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.write_text(
        f"$ {spec.source}\n--- stdout ---\n{stdout}\n--- stderr ---\n{stderr}\n",
        encoding="utf-8",
    )
    return str(log_path)


def _not_started(
    spec: CommandSpec, exit_code: int, stderr: str, log_path: Path | None
) -> CommandResult:
    return CommandResult(
        command=spec.source,
        exit_code=exit_code,
        ok=False,
        stdout="",
        stderr=stderr,
        duration_ms=0,
        log_path=_write_full_log(log_path, spec, "", stderr),
    )


def run_command(
    spec: CommandSpec,
    environment: BuildEnvironment,
    *,
    log_path: Path | None = None,
) -> CommandResult:
    """Run one command to completion. Never raises for a non-zero exit."""
    cwd = spec.cwd or environment.workdir
    started = time.monotonic()

    program = shutil.which(spec.program, path=environment.env.get("PATH"))
    if program is None and "/" not in spec.program:
        return _not_started(
            spec, NOT_FOUND_EXIT_CODE, f"command not found: {spec.program}", log_path
        )

    argv = [program or spec.program, *spec.argv[1:]]
    stdout_file = None
    if spec.stdout is not None:
        try:
            spec.stdout.parent.mkdir(parents=True, exist_ok=True)
            stdout_file = spec.stdout.open("ab" if spec.append else "wb")
        except OSError as exc:
            return _not_started(
                spec,
                REDIRECT_FAILED_EXIT_CODE,
                f"cannot open redirect target {spec.stdout}: {exc}",
                log_path,
            )

    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd),
            env=environment.env,
            stdin=subprocess.DEVNULL,
            stdout=stdout_file if stdout_file is not None else subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=environment.limits.timeout_seconds,
            preexec_fn=_limit_setter(environment.limits),
            check=False,
        )
        exit_code = int(proc.returncode)
        full_stdout = _to_text(proc.stdout)
        full_stderr = _to_text(proc.stderr)
    except subprocess.TimeoutExpired as exc:
        exit_code = TIMEOUT_EXIT_CODE
        full_stdout = _to_text(exc.stdout)
        full_stderr = _to_text(exc.stderr)
        if "timed out" not in full_stderr:
            full_stderr = f"{full_stderr}\ncommand timed out".strip()
    except OSError as exc:
        exit_code = NOT_FOUND_EXIT_CODE
        full_stdout = ""
        full_stderr = f"cannot execute {spec.program}: {exc}"
    finally:
        if stdout_file is not None:
            stdout_file.close()

    duration_ms = int((time.monotonic() - started) * 1000)
    stdout, _ = _truncate_text(full_stdout, environment.log_max_bytes)
    stderr, _ = _truncate_text(full_stderr, environment.log_max_bytes)
    return CommandResult(
        command=spec.source,
        exit_code=exit_code,
        ok=exit_code == 0,
        stdout=stdout,
        stderr=stderr,
        duration_ms=duration_ms,
        log_path=_write_full_log(log_path, spec, full_stdout, full_stderr),
    )


def run_sequence(
    specs: list[CommandSpec],
    environment: BuildEnvironment,
    *,
    log_dir: Path | None = None,
    label: str = "cmd",
) -> list[CommandResult]:
    """Run *specs* strictly in order, stopping at the first failure.

    Raises CommandExecutionError for the failing command; commands after it
    never start.
    """
    results: list[CommandResult] = []
    for index, spec in enumerate(specs, start=1):
        log_path = log_dir / f"{label}-{index:02d}.log" if log_dir is not None else None
        logger.info("running %s command %d/%d: %s", label, index, len(specs), spec.source)
        result = run_command(spec, environment, log_path=log_path)
        results.append(result)
        if not result.ok:
            logger.error(
                "%s command failed with exit %d after %dms: %s",
                label,
                result.exit_code,
                result.duration_ms,
                spec.source,
            )
            raise CommandExecutionError(spec.source, result.exit_code, result.stderr)
        logger.debug("%s command finished in %dms", label, result.duration_ms)
    return results
