"""
Tests for sequential batch persistence and its indicators
"""
import asyncio

import pytest

from clerksim.models import CaseState, Feedback, Message
from clerksim.persistence import (
    FAILURE_MESSAGE,
    BatchPersistenceQueue,
    DetailedSaveIndicator,
    SaveStatus,
    SaveStep,
    SimpleSaveIndicator,
    build_case_save_steps,
)

from conftest import FakeStore, make_case


def recording_step(name, log, fail=False):
    async def action():
        log.append(name)
        if fail:
            raise RuntimeError(f"{name} failed")
    return SaveStep(name, action)


def test_steps_run_in_order_with_progress():
    log = []
    queue = BatchPersistenceQueue()
    detailed = DetailedSaveIndicator(queue)
    steps = [recording_step(name, log) for name in ("conversation", "case state", "results", "feedback")]

    report = asyncio.run(queue.run(steps))

    assert log == ["conversation", "case state", "results", "feedback"]
    assert report.ok
    assert [(p.current_step, p.step_number, p.total_steps) for p in detailed.history] == [
        ("conversation", 1, 4), ("case state", 2, 4), ("results", 3, 4), ("feedback", 4, 4),
    ]
    assert detailed.history[1].percent == 50
    assert queue.status == SaveStatus.SAVED
    assert detailed.current_step is None


def test_failed_step_is_reported_without_raising():
    log = []
    queue = BatchPersistenceQueue()
    indicator = SimpleSaveIndicator(queue)
    steps = [
        recording_step("conversation", log),
        recording_step("case state", log, fail=True),
        recording_step("results", log),
    ]

    report = asyncio.run(queue.run(steps))

    assert log == ["conversation", "case state", "results"]
    assert report.failed == {"case state": "case state failed"}
    assert report.completed == ["conversation", "results"]
    assert queue.status == SaveStatus.FAILED
    assert indicator.visible
    assert indicator.text == FAILURE_MESSAGE


def test_overlapping_runs_are_refused():
    queue = BatchPersistenceQueue()

    async def scenario():
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()

        first = asyncio.create_task(queue.run([SaveStep("slow", blocked)]))
        await asyncio.sleep(0)
        with pytest.raises(RuntimeError):
            await queue.run([SaveStep("second", blocked)])
        gate.set()
        return await first

    assert asyncio.run(scenario()).ok
    assert not queue.running


def test_simple_indicator_reflects_queue_status():
    queue = BatchPersistenceQueue()
    indicator = SimpleSaveIndicator(queue, message="Saving your case...")
    seen = []

    async def action():
        seen.append((indicator.visible, indicator.text))

    assert indicator.text == ""
    asyncio.run(queue.run([SaveStep("only", action)]))

    assert seen == [(True, "Saving your case...")]
    assert indicator.text == "Saved"
    assert not indicator.visible


def test_case_save_steps_use_a_snapshot():
    store = FakeStore()
    state = CaseState(case_id="case-1", case=make_case(), messages=[Message.system("Opening")],
                      feedback=Feedback(diagnosis="ACS", key_learning_point="Ask about radiation"))
    steps = build_case_save_steps(store, "student@example.com", state)

    state.messages.append(Message.student("Added after the snapshot"))
    asyncio.run(BatchPersistenceQueue().run(steps))

    assert [step.name for step in steps] == ["Saving conversation", "Saving case details", "Saving feedback"]
    assert len(store.conversations["case-1"]) == 1
    assert store.names() == ["save_conversation", "save_case_state", "save_feedback"]
