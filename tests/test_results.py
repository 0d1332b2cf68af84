"""
Tests for concurrent examination/investigation result generation
"""
import asyncio

import pytest

from clerksim.errors import CaseValidationError, RateLimitError, ResultsFetchError
from clerksim.models import ResultSet
from clerksim.results import ParallelResultsCoordinator
from clerksim.retry import ResilientInvoker

from conftest import FakeGateway, SleepRecorder, descriptive, make_case, quantitative


def fetch(coordinator, exam_plan, inv_plan):
    committed = {}

    async def scenario():
        return await coordinator.fetch(
            "case-1", make_case(), exam_plan, inv_plan,
            lambda results: committed.__setitem__("examination", results),
            lambda results: committed.__setitem__("investigation", results),
        )

    return asyncio.run(scenario()), committed


def test_only_non_empty_plan_is_requested():
    gateway = FakeGateway()
    combined, committed = fetch(ParallelResultsCoordinator(gateway), "cardiovascular examination", "   ")

    assert gateway.count("examination-results") == 1
    assert gateway.count("investigation-results") == 0
    assert combined.investigation_results is None
    assert list(committed) == ["examination"]


def test_both_empty_plans_are_rejected_without_calls():
    gateway = FakeGateway()

    with pytest.raises(CaseValidationError):
        fetch(ParallelResultsCoordinator(gateway), "", "")

    assert gateway.calls == []


def test_both_requests_run_concurrently():
    started = []
    release = {}

    async def slow(kind, payload):
        started.append(kind)
        release.setdefault("event", asyncio.Event())
        if len(started) == 2:
            release["event"].set()
        # each request waits until the other has started
        await release["event"].wait()
        return ResultSet.model_validate({"results": [payload]})

    gateway = FakeGateway(
        examination_results=lambda request: slow("examination", descriptive()),
        investigation_results=lambda request: slow("investigation", quantitative()),
    )
    combined, committed = fetch(ParallelResultsCoordinator(gateway), "examine chest", "troponin")

    assert sorted(started) == ["examination", "investigation"]
    assert len(combined.examination_results) == 1
    assert combined.investigation_results[0].name == "Troponin"
    assert set(committed) == {"examination", "investigation"}


def test_partial_success_is_committed_before_joint_failure():
    gateway = FakeGateway()
    gateway.fail_times("investigation-results", 1, ValueError("malformed plan"))

    with pytest.raises(ResultsFetchError) as excinfo:
        fetch(ParallelResultsCoordinator(gateway), "examine chest", "troponin")

    error = excinfo.value
    assert set(error.errors) == {"investigation"}
    assert len(error.partial.examination_results) == 1
    assert error.partial.investigation_results is None


def test_each_request_has_its_own_retry_budget():
    sleep = SleepRecorder()
    gateway = FakeGateway()
    gateway.fail_times("investigation-results", 2, RateLimitError())
    coordinator = ParallelResultsCoordinator(gateway, ResilientInvoker(sleep=sleep))

    combined, _ = fetch(coordinator, "examine chest", "troponin")

    assert gateway.count("examination-results") == 1
    assert gateway.count("investigation-results") == 3
    assert sleep.delays == [1.0, 2.0]
    assert combined.investigation_results is not None
