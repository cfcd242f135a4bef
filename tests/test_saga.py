import asyncio

import pytest

from candidate_forge.core.errors import CriticalQualityFailure, StepFailure, ValidationError
from candidate_forge.core.interfaces import ProgressSinkInterface, StepStatus, WorkflowStatus
from candidate_forge.task_manager.saga import Saga, SagaStep, StepTimeoutError


class RecordingSink(ProgressSinkInterface):
    def __init__(self):
        super().__init__()
        self.events = []

    async def report(self, event):
        self.events.append(event)

    async def execute(self, event):
        await self.report(event)


class BrokenSink(RecordingSink):
    async def report(self, event):
        raise RuntimeError("sink offline")


def returning(value):
    async def action(inputs, upstream):
        return value
    return action


def recording_compensation(log, name):
    async def compensate(inputs, output):
        log.append(name)
    return compensate


def test_linear_workflow_passes_outputs_downstream():
    async def double(inputs, upstream):
        return upstream["load"] * 2

    async def describe(inputs, upstream):
        return f"{inputs['label']}={upstream['double']}"

    saga = Saga("linear", [
        SagaStep("load", returning(21)),
        SagaStep("double", double, depends_on=("load",)),
        SagaStep("describe", describe, depends_on=("double",)),
    ])

    workflow = asyncio.run(saga.run({"label": "answer"}))

    assert workflow.status == WorkflowStatus.SUCCEEDED
    assert workflow.result == "answer=42"
    assert workflow.outputs() == {"load": 21, "double": 42, "describe": "answer=42"}
    assert all(step.attempt_count == 1 for step in workflow.steps)
    assert workflow.step("double").input == {"load": 21}


def test_steps_only_see_declared_dependencies():
    seen = {}

    async def inspect(inputs, upstream):
        seen.update(upstream)
        return None

    saga = Saga("scoped", [
        SagaStep("a", returning(1)),
        SagaStep("b", returning(2), depends_on=("a",)),
        SagaStep("c", inspect, depends_on=("a",)),
    ])
    asyncio.run(saga.run())

    assert seen == {"a": 1}


def test_independent_steps_run_concurrently():
    async def scenario():
        left_ready, right_ready = asyncio.Event(), asyncio.Event()

        async def left(inputs, upstream):
            left_ready.set()
            await asyncio.wait_for(right_ready.wait(), timeout=1)
            return "left"

        async def right(inputs, upstream):
            right_ready.set()
            await asyncio.wait_for(left_ready.wait(), timeout=1)
            return "right"

        saga = Saga("parallel", [SagaStep("left", left), SagaStep("right", right)], result_step="left")
        return await saga.run()

    workflow = asyncio.run(scenario())

    assert workflow.status == WorkflowStatus.SUCCEEDED
    assert workflow.result == "left"


def test_exhausted_retries_compensate_completed_steps_in_reverse_order():
    compensations = []
    attempts = []

    async def flaky(inputs, upstream):
        attempts.append(len(attempts) + 1)
        raise RuntimeError("upstream service unavailable")

    saga = Saga("failing", [
        SagaStep("a", returning("A"), compensate=recording_compensation(compensations, "a")),
        SagaStep("b", returning("B"), depends_on=("a",), compensate=recording_compensation(compensations, "b")),
        SagaStep("c", flaky, depends_on=("b",), max_retries=3),
        SagaStep("d", returning("D"), depends_on=("c",), compensate=recording_compensation(compensations, "d")),
    ])

    workflow = asyncio.run(saga.run())

    assert workflow.status == WorkflowStatus.FAILED
    assert attempts == [1, 2, 3, 4]
    assert compensations == ["b", "a"]
    assert workflow.compensation_completed is True
    assert workflow.failure.stage == "c"
    assert workflow.failure.attempt_count == 4
    assert isinstance(workflow.failure.cause, RuntimeError)
    assert workflow.step("d").status == StepStatus.PENDING
    assert workflow.step("c").status == StepStatus.FAILED


@pytest.mark.parametrize("error", [ValidationError("bad input"), CriticalQualityFailure("quality abort")])
def test_fatal_errors_are_never_retried(error):
    calls = []

    async def fatal(inputs, upstream):
        calls.append(1)
        raise error

    workflow = asyncio.run(Saga("fatal", [SagaStep("only", fatal, max_retries=5)]).run())

    assert len(calls) == 1
    assert workflow.failure.attempt_count == 1
    assert workflow.failure.cause is error


def test_timeouts_are_retried():
    attempts = []

    async def slow_then_fast(inputs, upstream):
        attempts.append(1)
        if len(attempts) == 1:
            await asyncio.sleep(1)
        return "done"

    sink = RecordingSink()
    saga = Saga("timeouts", [SagaStep("slow", slow_then_fast, max_retries=1, timeout_seconds=0.05)], sink=sink)

    workflow = asyncio.run(saga.run())

    assert workflow.status == WorkflowStatus.SUCCEEDED
    assert workflow.step("slow").attempt_count == 2
    retry = next(event for event in sink.events if event.kind == "retry")
    assert StepTimeoutError.__name__ in retry.error


def test_failing_compensation_does_not_stop_the_others():
    compensations = []

    async def broken_compensation(inputs, output):
        raise RuntimeError("cannot undo")

    async def fail(inputs, upstream):
        raise RuntimeError("boom")

    saga = Saga("best_effort", [
        SagaStep("a", returning("A"), compensate=recording_compensation(compensations, "a")),
        SagaStep("b", returning("B"), depends_on=("a",), compensate=broken_compensation),
        SagaStep("c", fail, depends_on=("b",)),
    ])

    workflow = asyncio.run(saga.run())

    assert workflow.status == WorkflowStatus.FAILED
    assert compensations == ["a"]
    assert workflow.compensation_completed is False
    assert workflow.step("a").compensated is True
    assert workflow.step("b").compensated is False


def test_cancellation_unwinds_completed_steps():
    compensations = []
    saga = None

    async def cancel_midway(inputs, upstream):
        saga.cancel()
        return "B"

    saga = Saga("cancellable", [
        SagaStep("a", returning("A"), compensate=recording_compensation(compensations, "a")),
        SagaStep("b", cancel_midway, depends_on=("a",), compensate=recording_compensation(compensations, "b")),
        SagaStep("c", returning("C"), depends_on=("b",)),
    ])

    workflow = asyncio.run(saga.run())

    assert workflow.status == WorkflowStatus.COMPENSATED
    assert workflow.cancel_requested is True
    assert compensations == ["b", "a"]
    assert workflow.step("c").status == StepStatus.PENDING
    assert workflow.result is None


def test_cancelling_during_the_last_step_lets_the_workflow_finish():
    compensations = []
    accepted = []
    saga = None

    async def cancel_at_the_end(inputs, upstream):
        accepted.append(saga.cancel())
        return "done"

    saga = Saga("almost_done", [
        SagaStep("a", returning(1), compensate=recording_compensation(compensations, "a")),
        SagaStep("b", cancel_at_the_end, depends_on=("a",), compensate=recording_compensation(compensations, "b")),
    ])

    workflow = asyncio.run(saga.run())

    assert accepted == [False]
    assert workflow.status == WorkflowStatus.SUCCEEDED
    assert workflow.cancel_requested is False
    assert workflow.result == "done"
    assert compensations == []
    assert saga.cancel() is False


def test_progress_events_are_reported():
    sink = RecordingSink()

    async def fail(inputs, upstream):
        raise RuntimeError("boom")

    saga = Saga("events", [
        SagaStep("a", returning(1), compensate=recording_compensation([], "a")),
        SagaStep("b", fail, depends_on=("a",), max_retries=1),
    ], sink=sink)

    workflow = asyncio.run(saga.run())

    kinds = [(event.step, event.kind, event.attempt) for event in sink.events]
    assert kinds == [
        ("a", "start", 1),
        ("a", "success", 1),
        ("b", "start", 1),
        ("b", "retry", 1),
        ("b", "start", 2),
        ("b", "failure", 2),
        ("a", "compensate", 0),
    ]
    assert all(event.workflow_id == workflow.id for event in sink.events)


def test_a_failing_sink_does_not_fail_the_workflow():
    workflow = asyncio.run(Saga("quiet", [SagaStep("a", returning(1))], sink=BrokenSink()).run())
    assert workflow.status == WorkflowStatus.SUCCEEDED


@pytest.mark.parametrize("steps, result_step", [
    ([], None),
    ([SagaStep("a", returning(1)), SagaStep("a", returning(2))], None),
    ([SagaStep("a", returning(1), depends_on=("b",)), SagaStep("b", returning(2))], None),
    ([SagaStep("a", returning(1), max_retries=-1)], None),
    ([SagaStep("a", returning(1))], "missing"),
])
def test_invalid_step_graphs_are_rejected(steps, result_step):
    with pytest.raises(ValidationError):
        Saga("invalid", steps, result_step=result_step)


def test_a_saga_runs_only_once():
    saga = Saga("once", [SagaStep("a", returning(1))])

    async def scenario():
        await saga.run()
        await saga.run()

    with pytest.raises(ValidationError):
        asyncio.run(scenario())


def test_step_failure_is_raised_with_stage_and_attempts():
    failure = StepFailure("store", 3, RuntimeError("down"))
    assert failure.to_dict() == {"stage": "store", "attempt_count": 3, "cause": "RuntimeError: down"}
