"""Identifier helpers."""

from datetime import UTC, datetime
from uuid import uuid4


def new_run_id() -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    return f"run_{stamp}_{uuid4().hex[:8]}"
