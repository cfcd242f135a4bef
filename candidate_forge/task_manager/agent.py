# Task Manager Agent
import asyncio
import logging
from dataclasses import dataclass, field, fields as dataclass_fields
from typing import List, Dict, Any, Optional

from candidate_forge.core.interfaces import (
    TaskManagerInterface,
    ProjectStoreInterface,
    RequirementsInterpreterInterface,
    CodeSynthesizerInterface,
    PatternAnalyzerInterface,
    ProgressSinkInterface,
    Candidate,
    CheckpointStatus,
    EvolutionConfig,
    GenerationRequestRecord,
    Project,
    ProjectStatus,
    RunStatus,
    StepEvent,
    WorkflowRun,
    WorkflowStatus,
    new_id,
    utc_now,
)
from candidate_forge.core.errors import ForgeError, ValidationError, CriticalQualityFailure
from candidate_forge.config import settings
from candidate_forge.code_generator.agent import CodeGeneratorAgent
from candidate_forge.database_agent.agent import create_store
from candidate_forge.evaluator_agent.agent import EvaluatorAgent
from candidate_forge.evolution_engine.agent import EvolutionEngineAgent
from candidate_forge.monitoring_agent.agent import MonitoringAgent
from candidate_forge.quality_checkpoint.agent import QualityCheckpointAgent
from candidate_forge.requirements_interpreter.agent import OllamaRequirementsInterpreter
from candidate_forge.selection_controller.agent import SelectionControllerAgent, overall_score
from candidate_forge.task_manager.saga import Saga, SagaStep
from candidate_forge.usage_analyzer.agent import PatternAnalyzerAgent

logger = logging.getLogger(__name__)

NAME_LENGTH = (2, 100)
REQUIREMENTS_LENGTH = (10, 10000)
AUTONOMY_LEVELS = ("full_auto", "supervised", "human_checkpoints")
_EVOLUTION_OPTION_KEYS = {f.name for f in dataclass_fields(EvolutionConfig)} - {"target"}


@dataclass
class FailureReport:
    stage: str
    attempt_count: int
    cause: str
    compensation_completed: bool
    best_candidate: Optional[Candidate] = None
    project_id: Optional[str] = None


@dataclass
class GenerationResult:
    ok: bool
    project: Optional[Project] = None
    error: Optional[FailureReport] = None
    degraded: bool = False  # Best candidate was below the quality threshold
    workflow: Optional[WorkflowRun] = None


@dataclass
class EvolutionCycleReport:
    cycle: int
    run_id: Optional[str] = None
    previous_score: float = 0.0
    best_score: float = 0.0
    improved: bool = False
    applied: bool = False
    error: Optional[str] = None


@dataclass
class EvolutionLoopHandle:
    project_id: str
    mode: str
    interval_seconds: float
    autonomy_level: str
    max_cycles: Optional[int] = None
    cycles: List[EvolutionCycleReport] = field(default_factory=list)
    task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            logger.info(f"Stopping continuous evolution for project {self.project_id}")
            self.task.cancel()

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def wait(self) -> List[EvolutionCycleReport]:
        if self.task is not None:
            await asyncio.gather(self.task, return_exceptions=True)
        return self.cycles


class TaskManagerAgent(TaskManagerInterface):
    """Drives a generation request through the generation saga, and runs continuous evolution loops."""

    def __init__(self, store: Optional[ProjectStoreInterface] = None,
                 interpreter: Optional[RequirementsInterpreterInterface] = None,
                 synthesizer: Optional[CodeSynthesizerInterface] = None,
                 pattern_analyzer: Optional[PatternAnalyzerInterface] = None,
                 checkpoint: Optional[QualityCheckpointAgent] = None,
                 selection_controller: Optional[SelectionControllerAgent] = None,
                 sink: Optional[ProgressSinkInterface] = None,
                 config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.store = store or create_store()
        self.interpreter = interpreter or OllamaRequirementsInterpreter()
        self.synthesizer = synthesizer or CodeGeneratorAgent()
        self.pattern_analyzer = pattern_analyzer or PatternAnalyzerAgent(self.store)
        self.checkpoint = checkpoint or QualityCheckpointAgent()
        self.selection_controller = selection_controller or SelectionControllerAgent()
        self.sink = sink or MonitoringAgent()

        self.step_max_retries = self.config.get("step_max_retries", settings.STEP_MAX_RETRIES)
        self.retry_delay_seconds = self.config.get("retry_delay_seconds", settings.STEP_RETRY_DELAY_SECONDS)
        self.step_timeout_seconds = self.config.get("step_timeout_seconds", settings.STEP_TIMEOUT_SECONDS)
        self.strategy_max_retries = self.config.get("strategy_max_retries", settings.STRATEGY_GENERATION_MAX_RETRIES)
        self.max_evolution_rounds = max(1, self.config.get("max_evolution_rounds", settings.WORKFLOW_MAX_EVOLUTION_ROUNDS))
        self._active_sagas: Dict[str, Saga] = {}
        logger.info("TaskManagerAgent initialized.")

    # --- generation ---

    async def generate(self, name: str, requirements_text: str, options: Optional[Dict[str, Any]] = None) -> GenerationResult:
        options = dict(options or {})
        try:
            self._validate_request(name, requirements_text, options)
        except ValidationError as e:
            logger.warning(f"Rejected generation request '{name}': {e}")
            return GenerationResult(ok=False, error=FailureReport(
                stage="validate_request", attempt_count=0, cause=f"ValidationError: {e}", compensation_completed=True))

        try:
            project = await self.store.create_project(name.strip(), requirements_text, metadata={"options": options})
        except ForgeError as e:
            logger.error(f"Could not create project '{name}': {e}", exc_info=True)
            return GenerationResult(ok=False, error=FailureReport(
                stage="create_project", attempt_count=1, cause=f"{type(e).__name__}: {e}", compensation_completed=True))
        criteria = options.get("quality_criteria") or {}
        inputs = {
            "project_id": project.id,
            "requirements": requirements_text,
            "language": options.get("language", "en"),
            "mode": options.get("mode", "development"),
            "strategy_count": options.get("strategy_count", settings.STRATEGY_COUNT),
            "threshold": criteria.get("threshold", settings.QUALITY_THRESHOLD),
            "domain_markers": criteria.get("domain_markers"),
            "evolution": options.get("evolution") or {},
            "started_at": utc_now(),
        }
        state: Dict[str, Any] = {"best": None}
        saga = Saga("dsl_generation", self._generation_steps(state), sink=self.sink, result_step="update_project")
        state["saga"] = saga
        self._active_sagas[project.id] = saga

        try:
            workflow = await saga.run(inputs)
        finally:
            self._active_sagas.pop(project.id, None)
        await self._save_workflow(workflow)

        if workflow.status == WorkflowStatus.SUCCEEDED:
            outcome = workflow.step("select_optimal").output
            logger.info(f"Generation for project {project.id} completed (degraded: {outcome.degraded})")
            return GenerationResult(ok=True, project=workflow.result, degraded=outcome.degraded, workflow=workflow)

        report = self._failure_report(workflow, state, project.id)
        await self._notify_failure(workflow, report)
        try:
            latest = await self.store.get(project.id)
        except ForgeError as e:
            logger.error(f"Could not reload project {project.id} after the failure: {e}", exc_info=True)
            latest = project
        return GenerationResult(ok=False, project=latest, error=report, workflow=workflow)

    def cancel_generation(self, project_id: str) -> bool:
        saga = self._active_sagas.get(project_id)
        if saga is None:
            return False
        return saga.cancel()

    def _validate_request(self, name: str, requirements_text: str, options: Dict[str, Any]) -> None:
        name = (name or "").strip()
        if not NAME_LENGTH[0] <= len(name) <= NAME_LENGTH[1]:
            raise ValidationError(f"Project name must be {NAME_LENGTH[0]}-{NAME_LENGTH[1]} characters long")
        length = len((requirements_text or "").strip())
        if not REQUIREMENTS_LENGTH[0] <= length <= REQUIREMENTS_LENGTH[1]:
            raise ValidationError(f"Requirements must be {REQUIREMENTS_LENGTH[0]}-{REQUIREMENTS_LENGTH[1]} characters long")
        count = options.get("strategy_count", settings.STRATEGY_COUNT)
        if not isinstance(count, int) or count < 1:
            raise ValidationError(f"strategy_count must be a positive integer, got {count!r}")
        unknown = set(options.get("evolution") or {}) - _EVOLUTION_OPTION_KEYS
        if unknown:
            raise ValidationError(f"Unknown evolution options: {sorted(unknown)}")

    def _generation_steps(self, state: Dict[str, Any]) -> List[SagaStep]:
        store = self.store

        async def load_project(inputs, upstream):
            return await store.update(inputs["project_id"], {"status": ProjectStatus.GENERATING})

        async def mark_project_failed(inputs, project):
            failure = state["saga"].workflow.failure
            message = str(failure) if failure else "Generation cancelled"
            await store.update(project.id, {"status": ProjectStatus.FAILED, "error_message": message})

        async def parse_requirements(inputs, upstream):
            spec = await self.interpreter.parse(inputs["requirements"], inputs["language"])
            await store.update(inputs["project_id"], {"specification": spec})
            return spec

        async def analyze_patterns(inputs, upstream):
            return await self.pattern_analyzer.analyze_for_generation(upstream["parse_requirements"])

        async def generate_strategies(inputs, upstream):
            candidates = await self.synthesizer.generate_strategies(
                upstream["parse_requirements"], upstream["analyze_patterns"], inputs["strategy_count"])
            await store.save_candidates(inputs["project_id"], candidates)
            return candidates

        async def cleanup_partial_artifacts(inputs, candidates):
            await store.delete_candidates(inputs["project_id"])

        async def evaluate_strategies(inputs, upstream):
            spec = upstream["parse_requirements"]
            markers = inputs["domain_markers"] or spec.entities or None
            scorer = EvaluatorAgent(domain_markers=markers)
            evaluated = await scorer.evaluate_all(upstream["generate_strategies"])
            await store.update(inputs["project_id"], {"status": ProjectStatus.TESTING})
            state["best"] = max(evaluated, key=lambda c: overall_score(c.evaluation_vector))
            return {"candidates": evaluated, "domain_markers": markers}

        def check_quality(candidates, threshold):
            result = self.checkpoint.checkpoint([c.evaluation_vector for c in candidates], threshold)
            if result.status == CheckpointStatus.ABORT:
                reasons = sorted({r for f in result.metrics.critical_failures for r in f.reasons})
                raise CriticalQualityFailure(f"Quality checkpoint aborted: {', '.join(reasons)}", result)
            return result

        async def quality_checkpoint(inputs, upstream):
            return check_quality(upstream["evaluate_strategies"]["candidates"], inputs["threshold"])

        async def evolve_candidates(inputs, upstream):
            evaluated = upstream["evaluate_strategies"]
            candidates = evaluated["candidates"]
            verdict = upstream["quality_checkpoint"]
            if verdict.status != CheckpointStatus.RETRY_WITH_IMPROVEMENTS:
                return {"candidates": candidates, "evolution_run": None, "evolution_runs": [], "checkpoint": verdict}

            engine = EvolutionEngineAgent(
                scorer=EvaluatorAgent(domain_markers=evaluated["domain_markers"]),
                selection_controller=self.selection_controller,
                store=store,
            )
            overrides = {
                "population_size": settings.WORKFLOW_EVOLUTION_POPULATION_SIZE,
                "max_generations": settings.WORKFLOW_EVOLUTION_MAX_GENERATIONS,
                **inputs["evolution"],
            }
            combined, seeds, runs = list(candidates), candidates, []
            for round_number in range(1, self.max_evolution_rounds + 1):
                run = await engine.run(EvolutionConfig(target=inputs["project_id"], **overrides), seeds)
                if run.status == RunStatus.FAILED:
                    raise ForgeError(f"Evolution run {run.id} failed: {run.error_message}")
                runs.append(run)
                evolved = [ind.to_candidate() for ind in engine.best_individuals(run, limit=len(candidates))]
                combined.extend(evolved)
                state["best"] = max(combined, key=lambda c: overall_score(c.evaluation_vector))

                verdict = check_quality(combined, inputs["threshold"])
                logger.info(f"Evolution round {round_number} for project {inputs['project_id']}: "
                            f"checkpoint says {verdict.status.value}")
                if verdict.status == CheckpointStatus.CONTINUE:
                    break
                seeds = evolved
            else:
                logger.warning(f"Project {inputs['project_id']} still below quality threshold after "
                               f"{self.max_evolution_rounds} evolution round(s); continuing with the best candidate")
            return {"candidates": combined, "evolution_run": runs[-1], "evolution_runs": runs, "checkpoint": verdict}

        async def select_optimal(inputs, upstream):
            outcome = self.selection_controller.select_optimal(upstream["evolve_candidates"]["candidates"], inputs["threshold"])
            state["best"] = outcome.best
            return outcome

        async def generate_final_code(inputs, upstream):
            return await self.synthesizer.generate_final_code(upstream["select_optimal"].best, inputs["mode"])

        async def record_generation_request(inputs, upstream):
            outcome = upstream["select_optimal"]
            completed_at = utc_now()
            record = GenerationRequestRecord(
                id=new_id("req"),
                project_id=upstream["load_project"].id,
                strategy=outcome.best.strategy,
                status="completed",
                parameters={key: inputs[key] for key in ("strategy_count", "mode", "language", "threshold")},
                generated_code=upstream["generate_final_code"],
                quality_metrics={
                    "overall_score": outcome.score,
                    "degraded": outcome.degraded,
                    **(outcome.best.evaluation_vector.as_dict() if outcome.best.evaluation_vector else {}),
                },
                execution_time_ms=(completed_at - inputs["started_at"]).total_seconds() * 1000,
                started_at=inputs["started_at"],
                completed_at=completed_at,
            )
            await store.save_generation_request(record)
            return record

        async def mark_request_failed(inputs, record):
            await store.update_generation_request(record.id, {"status": "failed"})

        async def update_project(inputs, upstream):
            project = upstream["load_project"]
            outcome = upstream["select_optimal"]
            return await store.update(project.id, {
                "status": ProjectStatus.COMPLETED,
                "result": upstream["generate_final_code"],
                "quality_score": outcome.score,
                "completed_at": utc_now(),
                "metadata": {
                    **project.metadata,
                    "selected_candidate_id": outcome.best.id,
                    "selected_strategy": outcome.best.strategy,
                    "degraded": outcome.degraded,
                },
            })

        retrying = {
            "max_retries": self.step_max_retries,
            "timeout_seconds": self.step_timeout_seconds,
            "retry_delay_seconds": self.retry_delay_seconds,
        }
        return [
            SagaStep("load_project", load_project, compensate=mark_project_failed, **retrying),
            SagaStep("parse_requirements", parse_requirements, ("load_project",), **retrying),
            SagaStep("analyze_patterns", analyze_patterns, ("parse_requirements",), **retrying),
            SagaStep("generate_strategies", generate_strategies, ("parse_requirements", "analyze_patterns"),
                     compensate=cleanup_partial_artifacts, max_retries=self.strategy_max_retries,
                     timeout_seconds=self.config.get("strategy_timeout_seconds", settings.STRATEGY_GENERATION_TIMEOUT_SECONDS),
                     retry_delay_seconds=self.retry_delay_seconds),
            SagaStep("evaluate_strategies", evaluate_strategies, ("generate_strategies", "parse_requirements"),
                     timeout_seconds=self.config.get("evaluation_timeout_seconds", settings.EVALUATION_TIMEOUT_SECONDS)),
            SagaStep("quality_checkpoint", quality_checkpoint, ("evaluate_strategies",)),
            SagaStep("evolve_candidates", evolve_candidates, ("evaluate_strategies", "quality_checkpoint")),
            SagaStep("select_optimal", select_optimal, ("evolve_candidates",)),
            SagaStep("generate_final_code", generate_final_code, ("select_optimal",), **retrying),
            SagaStep("record_generation_request", record_generation_request,
                     ("load_project", "select_optimal", "generate_final_code"), compensate=mark_request_failed, **retrying),
            SagaStep("update_project", update_project,
                     ("load_project", "select_optimal", "generate_final_code"), **retrying),
        ]

    def _failure_report(self, workflow: WorkflowRun, state: Dict[str, Any], project_id: str) -> FailureReport:
        if workflow.failure is not None:
            failure = workflow.failure.to_dict()
            return FailureReport(
                stage=failure["stage"],
                attempt_count=failure["attempt_count"],
                cause=failure["cause"],
                compensation_completed=workflow.compensation_completed,
                best_candidate=state.get("best"),
                project_id=project_id,
            )
        return FailureReport(
            stage="cancelled",
            attempt_count=0,
            cause="Generation cancelled",
            compensation_completed=workflow.compensation_completed,
            best_candidate=state.get("best"),
            project_id=project_id,
        )

    async def _notify_failure(self, workflow: WorkflowRun, report: FailureReport) -> None:
        logger.error(f"Generation for project {report.project_id} failed at '{report.stage}': {report.cause}")
        try:
            await self.sink.report(StepEvent(workflow_id=workflow.id, step=report.stage, kind="workflow_failed",
                                             attempt=report.attempt_count, error=report.cause))
        except Exception as e:
            logger.warning(f"Failed to notify progress sink about workflow {workflow.id}: {e}")

    async def _save_workflow(self, workflow: WorkflowRun) -> None:
        try:
            await self.store.save_workflow_run(workflow)
        except ForgeError as e:
            logger.error(f"Could not persist workflow run {workflow.id}: {e}", exc_info=True)

    # --- continuous evolution ---

    async def start_evolution(self, project_id: str, options: Optional[Dict[str, Any]] = None) -> EvolutionLoopHandle:
        options = dict(options or {})
        mode = options.get("mode", "continuous")
        if mode not in settings.EVOLUTION_INTERVALS_SECONDS:
            raise ValidationError(f"Unknown evolution mode: {mode}")
        autonomy_level = options.get("autonomy_level", settings.DEFAULT_AUTONOMY_LEVEL)
        if autonomy_level not in AUTONOMY_LEVELS:
            raise ValidationError(f"Unknown autonomy level: {autonomy_level}")
        unknown = set(options.get("evolution") or {}) - _EVOLUTION_OPTION_KEYS
        if unknown:
            raise ValidationError(f"Unknown evolution options: {sorted(unknown)}")

        project = await self.store.get(project_id)
        if project is None:
            raise ValidationError(f"Project {project_id} does not exist")
        if project.status not in (ProjectStatus.COMPLETED, ProjectStatus.DEPLOYED) or not project.result:
            raise ValidationError(f"Project {project_id} has no completed result to evolve (status {project.status.value})")

        handle = EvolutionLoopHandle(
            project_id=project_id,
            mode=mode,
            interval_seconds=options.get("interval", settings.EVOLUTION_INTERVALS_SECONDS[mode]),
            autonomy_level=autonomy_level,
            max_cycles=options.get("max_cycles"),
        )
        handle.task = asyncio.create_task(self._evolution_loop(handle, options.get("evolution") or {}))
        logger.info(f"Continuous evolution started for project {project_id}: mode {mode}, "
                    f"interval {handle.interval_seconds}s, autonomy {autonomy_level}")
        return handle

    async def _evolution_loop(self, handle: EvolutionLoopHandle, overrides: Dict[str, Any]) -> None:
        cycle = 0
        while handle.max_cycles is None or cycle < handle.max_cycles:
            cycle += 1
            try:
                report = await self._evolution_cycle(handle, cycle, overrides)
            except ValidationError as e:
                logger.error(f"Stopping continuous evolution for project {handle.project_id}: {e}")
                handle.cycles.append(EvolutionCycleReport(cycle=cycle, error=f"ValidationError: {e}"))
                return
            except Exception as e:
                logger.error(f"Evolution cycle {cycle} for project {handle.project_id} failed: {e}", exc_info=True)
                report = EvolutionCycleReport(cycle=cycle, error=f"{type(e).__name__}: {e}")
            handle.cycles.append(report)
            if handle.max_cycles is not None and cycle >= handle.max_cycles:
                break
            await asyncio.sleep(handle.interval_seconds)
        logger.info(f"Continuous evolution for project {handle.project_id} finished after {cycle} cycle(s)")

    async def _evolution_cycle(self, handle: EvolutionLoopHandle, cycle: int, overrides: Dict[str, Any]) -> EvolutionCycleReport:
        project = await self.store.get(handle.project_id)
        if project is None:
            raise ValidationError(f"Project {handle.project_id} no longer exists")
        restore_status = project.status if project.status != ProjectStatus.EVOLVING else ProjectStatus.COMPLETED
        project = await self.store.update(project.id, {"status": ProjectStatus.EVOLVING})

        run = None
        try:
            markers = project.specification.entities if project.specification else None
            engine = EvolutionEngineAgent(
                scorer=EvaluatorAgent(domain_markers=markers or None),
                selection_controller=self.selection_controller,
                store=self.store,
            )
            config = EvolutionConfig(target=project.id, **{
                "population_size": settings.CONTINUOUS_EVOLUTION_POPULATION_SIZE,
                "max_generations": settings.CONTINUOUS_EVOLUTION_MAX_GENERATIONS,
                **overrides,
            })
            seed = Candidate(id=new_id("cand"), source_text=project.result,
                             strategy=project.metadata.get("selected_strategy"))
            run = await engine.start(config, [seed])
            run = await engine.run_to_convergence(run)
        except asyncio.CancelledError:
            logger.info(f"Evolution cycle {cycle} for project {project.id} cancelled")
            if run is not None:
                engine.cancel(run)
                try:
                    await self.store.save_evolution_run(run)
                except ForgeError as e:
                    logger.error(f"Could not persist cancelled run {run.id}: {e}", exc_info=True)
            await self.store.update(project.id, {"status": restore_status})
            raise
        except Exception:
            await self.store.update(project.id, {"status": restore_status})
            raise

        best = engine.best_individuals(run, limit=1)
        candidate = best[0].to_candidate() if best else None
        best_score = overall_score(candidate.evaluation_vector) if candidate else 0.0
        previous_score = project.quality_score or 0.0
        report = EvolutionCycleReport(cycle=cycle, run_id=run.id, previous_score=previous_score,
                                      best_score=best_score, improved=best_score > previous_score)
        if run.status == RunStatus.FAILED:
            report.error = run.error_message
            report.improved = False

        if report.improved and handle.autonomy_level == "full_auto":
            await self.store.update(project.id, {
                "status": ProjectStatus.DEPLOYED,
                "result": candidate.source_text,
                "quality_score": best_score,
                "metadata": {**project.metadata, "last_evolution_run": run.id},
            })
            report.applied = True
            logger.info(f"Project {project.id} improved from {previous_score:.2f} to {best_score:.2f}; applied")
        elif report.improved:
            proposal = {"run_id": run.id, "score": best_score, "source_text": candidate.source_text,
                        "proposed_at": utc_now().isoformat()}
            await self.store.update(project.id, {
                "status": restore_status,
                "metadata": {**project.metadata, "pending_evolution_proposal": proposal},
            })
            logger.info(f"Project {project.id} improvement to {best_score:.2f} recorded for review ({handle.autonomy_level})")
        else:
            await self.store.update(project.id, {"status": restore_status})
            logger.info(f"Evolution cycle {cycle} for project {project.id} found no improvement over {previous_score:.2f}")
        return report

    async def execute(self, name: str, requirements_text: str, options: Optional[Dict[str, Any]] = None) -> GenerationResult:
        return await self.generate(name, requirements_text, options)
