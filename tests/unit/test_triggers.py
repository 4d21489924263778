from __future__ import annotations

from uuid import uuid4

import pytest
from fastapi import BackgroundTasks

from brain_rag.config import Settings
from brain_rag.triggers import (
    STATE_FAILED,
    STATE_SCHEDULED,
    STATE_SKIPPED,
    fire_immediate_trigger,
    resolve_trigger_mode,
)


@pytest.mark.parametrize(
    ("development_mode", "explicit", "expected"),
    [
        (True, None, "background"),
        (False, None, "rq"),
        (True, "rq", "rq"),
        (False, "none", "none"),
    ],
)
def test_resolve_trigger_mode(development_mode: bool, explicit, expected: str) -> None:
    fields = {"development_mode": development_mode}
    if explicit is not None:
        fields["ingest_trigger"] = explicit
    config = Settings(_env_file=None, **fields)

    assert resolve_trigger_mode(config) == expected


def test_background_trigger_schedules_inline_run() -> None:
    tasks = BackgroundTasks()
    seen: list = []
    job_id = uuid4()

    state = fire_immediate_trigger(
        job_id, mode="background", background_tasks=tasks, run_inline=seen.append
    )

    assert state == STATE_SCHEDULED
    assert len(tasks.tasks) == 1
    assert tasks.tasks[0].args == (str(job_id),)


def test_none_and_broken_rq_never_raise(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(job_id):
        raise ConnectionError("redis down")

    monkeypatch.setattr("brain_rag.triggers.enqueue_immediate", broken)

    assert fire_immediate_trigger(uuid4(), mode="none") == STATE_SKIPPED
    assert fire_immediate_trigger(uuid4(), mode="rq") == STATE_FAILED
