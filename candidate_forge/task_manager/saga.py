# Saga engine
"""
Runs a graph of named steps with explicit data dependencies.

Independent steps run concurrently as asyncio tasks. A step only sees the
workflow inputs and the outputs of the steps it declares in ``depends_on``.
When a step fails for good, no further steps are scheduled, in-flight steps
finish, and the compensating actions of every completed step run in reverse
completion order.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from candidate_forge.core.interfaces import (
    ProgressSinkInterface,
    StepEvent,
    StepResult,
    StepStatus,
    WorkflowRun,
    WorkflowStatus,
    new_id,
    utc_now,
)
from candidate_forge.core.errors import StepFailure, ValidationError, is_retryable

logger = logging.getLogger(__name__)

StepAction = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Any]]
CompensateAction = Callable[[Dict[str, Any], Any], Awaitable[None]]


@dataclass
class SagaStep:
    name: str
    action: StepAction  # (workflow inputs, upstream outputs by step name) -> output
    depends_on: Tuple[str, ...] = ()
    compensate: Optional[CompensateAction] = None  # (workflow inputs, this step's output)
    max_retries: int = 0
    timeout_seconds: Optional[float] = None
    retry_delay_seconds: float = 0.0  # Doubled after every retry


class StepTimeoutError(Exception):
    pass


class Saga:
    """One execution of a step graph. Create a new Saga per workflow run."""

    def __init__(self, name: str, steps: Sequence[SagaStep], sink: Optional[ProgressSinkInterface] = None,
                 result_step: Optional[str] = None, workflow_id: Optional[str] = None):
        self._validate(steps, result_step)
        self.name = name
        self.steps: Dict[str, SagaStep] = {step.name: step for step in steps}
        self.order = [step.name for step in steps]
        self.result_step = result_step or self.order[-1]
        self.sink = sink
        self.workflow = WorkflowRun(
            id=workflow_id or new_id("wf"),
            name=name,
            steps=[StepResult(name=step.name) for step in steps],
        )
        self._outputs: Dict[str, Any] = {}
        self._completion_order: List[str] = []
        self._pending: List[str] = list(self.order)  # Steps not yet started

    @staticmethod
    def _validate(steps: Sequence[SagaStep], result_step: Optional[str]) -> None:
        if not steps:
            raise ValidationError("A saga needs at least one step")
        declared = set()
        for step in steps:
            if step.name in declared:
                raise ValidationError(f"Duplicate step name: {step.name}")
            # Dependencies must be declared earlier, which also rules out cycles
            missing = [dep for dep in step.depends_on if dep not in declared]
            if missing:
                raise ValidationError(f"Step '{step.name}' depends on undeclared or later steps: {missing}")
            if step.max_retries < 0:
                raise ValidationError(f"Step '{step.name}' has negative max_retries")
            declared.add(step.name)
        if result_step is not None and result_step not in declared:
            raise ValidationError(f"Unknown result step: {result_step}")

    def cancel(self) -> bool:
        """Stops scheduling new steps. Completed steps are unwound once in-flight steps finish.

        Returns False when the workflow is over, or when every step has already
        started, in which case the run is left to finish on its own.
        """
        if self.workflow.status not in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING):
            return False
        if not self._pending:
            logger.info(f"Ignoring cancellation of workflow {self.workflow.id}: every step has already started")
            return False
        logger.info(f"Cancellation requested for workflow {self.workflow.id}")
        self.workflow.cancel_requested = True
        self.workflow.status = WorkflowStatus.CANCELLED
        return True

    async def run(self, inputs: Optional[Dict[str, Any]] = None) -> WorkflowRun:
        inputs = dict(inputs or {})
        workflow = self.workflow
        if workflow.started_at is not None:
            raise ValidationError(f"Workflow {workflow.id} has already been run")
        workflow.started_at = utc_now()
        if not workflow.cancel_requested:
            workflow.status = WorkflowStatus.RUNNING
        logger.info(f"Starting workflow '{self.name}' ({workflow.id}) with {len(self.order)} steps")

        pending = self._pending
        in_flight: Dict[asyncio.Task, str] = {}
        failure: Optional[StepFailure] = None

        while True:
            if failure is None and not workflow.cancel_requested:
                for name in list(pending):
                    step = self.steps[name]
                    if all(dep in self._outputs for dep in step.depends_on):
                        pending.remove(name)
                        upstream = {dep: self._outputs[dep] for dep in step.depends_on}
                        in_flight[asyncio.create_task(self._execute_step(step, inputs, upstream))] = name
            if not in_flight:
                break

            done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                name = in_flight.pop(task)
                error = task.exception()
                if error is None:
                    self._outputs[name] = task.result()
                    self._completion_order.append(name)
                elif failure is None:
                    failure = error if isinstance(error, StepFailure) else StepFailure(name, 1, error)
                else:
                    logger.error(f"Step '{name}' also failed while workflow {workflow.id} was stopping: {error}")

        if failure is not None:
            workflow.failure = failure
            workflow.status = WorkflowStatus.COMPENSATING
            logger.error(f"Workflow {workflow.id} failed at step '{failure.stage}' after {failure.attempt_count} attempt(s). Compensating.")
            await self._compensate(inputs)
            workflow.status = WorkflowStatus.FAILED
        elif workflow.cancel_requested:
            workflow.status = WorkflowStatus.COMPENSATING
            await self._compensate(inputs)
            workflow.status = WorkflowStatus.COMPENSATED
            logger.info(f"Workflow {workflow.id} cancelled and unwound")
        else:
            workflow.result = self._outputs.get(self.result_step)
            workflow.status = WorkflowStatus.SUCCEEDED
            logger.info(f"Workflow '{self.name}' ({workflow.id}) succeeded")

        workflow.finished_at = utc_now()
        return workflow

    async def _execute_step(self, step: SagaStep, inputs: Dict[str, Any], upstream: Dict[str, Any]) -> Any:
        result = self.workflow.step(step.name)
        result.status = StepStatus.RUNNING
        result.input = dict(upstream)
        delay = step.retry_delay_seconds
        attempt = 0

        while True:
            attempt += 1
            result.attempt_count = attempt
            await self._report(step.name, "start", attempt)
            try:
                if step.timeout_seconds:
                    output = await asyncio.wait_for(step.action(inputs, upstream), timeout=step.timeout_seconds)
                else:
                    output = await step.action(inputs, upstream)
            except asyncio.TimeoutError:
                error: Exception = StepTimeoutError(f"Step '{step.name}' timed out after {step.timeout_seconds}s")
            except Exception as e:
                error = e
            else:
                result.status = StepStatus.SUCCEEDED
                result.output = output
                result.error = None
                await self._report(step.name, "success", attempt)
                return output

            description = f"{type(error).__name__}: {error}"
            if is_retryable(error) and attempt <= step.max_retries:
                logger.warning(f"Step '{step.name}' attempt {attempt} failed ({description}). Retrying.")
                await self._report(step.name, "retry", attempt, description)
                if delay > 0:
                    await asyncio.sleep(delay)
                    delay *= 2
                continue

            result.status = StepStatus.FAILED
            result.error = description
            await self._report(step.name, "failure", attempt, description)
            raise StepFailure(step.name, attempt, error) from error

    async def _compensate(self, inputs: Dict[str, Any]) -> None:
        all_succeeded = True
        for name in reversed(self._completion_order):
            step = self.steps[name]
            result = self.workflow.step(name)
            if step.compensate is None or result.compensated:
                continue
            try:
                await step.compensate(inputs, self._outputs[name])
                result.compensated = True
                await self._report(name, "compensate")
            except Exception as e:
                all_succeeded = False
                logger.error(f"Compensation for step '{name}' failed: {e}", exc_info=True)
                await self._report(name, "compensation_failed", error=f"{type(e).__name__}: {e}")
        self.workflow.compensation_completed = all_succeeded

    async def _report(self, step: str, kind: str, attempt: int = 0, error: Optional[str] = None) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.report(StepEvent(workflow_id=self.workflow.id, step=step, kind=kind, attempt=attempt, error=error))
        except Exception as e:
            logger.warning(f"Progress sink rejected event {kind} for step '{step}': {e}")
