"""Run records: per-run state file and stage bookkeeping."""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import cast

from stagepack.errors import StageError, StagepackError
from stagepack.layout import BuildLayout
from stagepack.logging import bind_context
from stagepack.stages import Stage

logger = logging.getLogger(__name__)


def write_state(run_dir: Path, run_id: str, state: str, detail: str = "") -> Path:
    run_dir.mkdir(parents=True, exist_ok=True)
    state_path = run_dir / "state.json"
    state_path.write_text(json.dumps({"run_id": run_id, "state": state, "detail": detail}))
    return state_path


def read_state(run_dir: Path) -> dict[str, str]:
    state = json.loads((run_dir / "state.json").read_text())
    return cast(dict[str, str], state)


class PipelineRun:
    """Tracks the current stage of one invocation and records transitions."""

    def __init__(self, run_id: str, layout: BuildLayout) -> None:
        self.run_id = run_id
        self.layout = layout
        self.stage: Stage | None = None
        self.history: list[Stage] = []

    @property
    def run_dir(self) -> Path:
        return self.layout.run_dir(self.run_id)

    @property
    def log_dir(self) -> Path:
        return self.run_dir / "logs"

    def _enter(self, stage: Stage, detail: str = "") -> None:
        self.stage = stage
        self.history.append(stage)
        bind_context(stage=stage.value)
        write_state(self.run_dir, self.run_id, stage.value, detail)

    @contextlib.contextmanager
    def stage_scope(self, stage: Stage) -> Iterator[None]:
        """Run a block as *stage*; any failure moves the run to FAILED."""
        self._enter(stage)
        logger.info("stage %s started", stage.value)
        try:
            yield
        except StageError:
            raise
        except (StagepackError, OSError) as exc:
            self.fail(stage, exc)
            raise StageError(stage.value, exc) from exc
        logger.info("stage %s finished", stage.value)

    def fail(self, stage: Stage, exc: BaseException) -> None:
        detail = f"{stage.value}: {exc}"
        self._enter(Stage.FAILED, detail)
        logger.error("stage %s failed: %s", stage.value, exc)

    def finish(self, detail: str = "") -> None:
        self._enter(Stage.DONE, detail)
