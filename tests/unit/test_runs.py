from __future__ import annotations

from pathlib import Path

import pytest

from stagepack.errors import CommandExecutionError, StageError
from stagepack.ids import new_run_id
from stagepack.layout import BuildLayout
from stagepack.runs import PipelineRun, read_state, write_state
from stagepack.stages import Stage


def test_write_and_read_state(tmp_path: Path) -> None:
    write_state(tmp_path / "run", "run_1", "BUILD", "compiling")
    assert read_state(tmp_path / "run") == {
        "run_id": "run_1",
        "state": "BUILD",
        "detail": "compiling",
    }


def test_run_ids_are_unique() -> None:
    first, second = new_run_id(), new_run_id()
    assert first.startswith("run_")
    assert first != second


def test_stage_scope_records_transitions(tmp_path: Path) -> None:
    run = PipelineRun("run_a", BuildLayout(tmp_path, "demo", "1.0"))
    with run.stage_scope(Stage.CLEAN):
        assert read_state(run.run_dir)["state"] == "CLEAN"
    with run.stage_scope(Stage.UNPACK):
        pass
    run.finish("done")

    assert run.history == [Stage.CLEAN, Stage.UNPACK, Stage.DONE]
    assert run.stage is Stage.DONE
    assert read_state(run.run_dir) == {"run_id": "run_a", "state": "DONE", "detail": "done"}
    assert run.run_dir == tmp_path / "demo-1.0" / "runs" / "run_a"


def test_failure_wraps_error_and_moves_to_failed(tmp_path: Path) -> None:
    run = PipelineRun("run_b", BuildLayout(tmp_path, "demo", "1.0"))
    cause = CommandExecutionError("false", 1)

    with pytest.raises(StageError) as excinfo:
        with run.stage_scope(Stage.BUILD):
            raise cause

    assert excinfo.value.stage == "BUILD"
    assert excinfo.value.cause is cause
    assert run.history == [Stage.BUILD, Stage.FAILED]
    state = read_state(run.run_dir)
    assert state["state"] == "FAILED"
    assert state["detail"].startswith("BUILD: command exited 1")


def test_unrelated_errors_propagate_untouched(tmp_path: Path) -> None:
    run = PipelineRun("run_c", BuildLayout(tmp_path, "demo", "1.0"))
    with pytest.raises(KeyError):
        with run.stage_scope(Stage.ASSEMBLE):
            raise KeyError("x")
    assert run.stage is Stage.ASSEMBLE
