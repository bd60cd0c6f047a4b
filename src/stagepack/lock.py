"""Per-target exclusive lock so two runs never share a staging root."""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import time
from collections.abc import Iterator
from pathlib import Path

from stagepack.errors import PipelineLockedError

logger = logging.getLogger(__name__)

_POLL_INTERVAL_S = 0.1


@contextlib.contextmanager
def target_lock(lock_path: Path, *, timeout_s: float = 0.0) -> Iterator[Path]:
    """Hold an exclusive flock on *lock_path* for the duration of the block.

    With ``timeout_s == 0`` a held lock is refused immediately; otherwise the
    caller waits up to *timeout_s* seconds before giving up.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + max(timeout_s, 0.0)
    with lock_path.open("a+", encoding="utf-8") as lf:
        while True:
            try:
                fcntl.flock(lf.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    lf.seek(0)
                    holder = lf.read().strip() or "unknown"
                    raise PipelineLockedError(
                        f"another run holds {lock_path} (pid {holder})"
                    ) from None
                time.sleep(_POLL_INTERVAL_S)
        try:
            lf.seek(0)
            lf.truncate()
            lf.write(str(os.getpid()))
            lf.flush()
            logger.debug("acquired lock %s", lock_path)
            yield lock_path
        finally:
            lf.seek(0)
            lf.truncate()
            lf.flush()
            fcntl.flock(lf.fileno(), fcntl.LOCK_UN)
