# Database Agent
import json
import logging
import os
import tempfile
from dataclasses import asdict, replace, fields as dataclass_fields
from datetime import datetime
from typing import List, Dict, Any, Optional

from candidate_forge.core.interfaces import (
    ProjectStoreInterface,
    Project,
    ProjectStatus,
    Specification,
    Candidate,
    EvaluationVector,
    EvolutionRun,
    EvolutionStrategyName,
    RunStatus,
    Individual,
    GenerationRequestRecord,
    WorkflowRun,
    new_id,
    utc_now,
)
from candidate_forge.core.errors import ValidationError, PersistenceError
from candidate_forge.config import settings

logger = logging.getLogger(__name__)

# Allowed project status transitions; staying in the same status is always allowed
PROJECT_TRANSITIONS = {
    ProjectStatus.PENDING: {ProjectStatus.GENERATING, ProjectStatus.FAILED},
    ProjectStatus.GENERATING: {ProjectStatus.TESTING, ProjectStatus.COMPLETED, ProjectStatus.FAILED},
    ProjectStatus.TESTING: {ProjectStatus.GENERATING, ProjectStatus.COMPLETED, ProjectStatus.FAILED},
    ProjectStatus.COMPLETED: {ProjectStatus.DEPLOYED, ProjectStatus.EVOLVING, ProjectStatus.FAILED},
    ProjectStatus.DEPLOYED: {ProjectStatus.EVOLVING, ProjectStatus.FAILED},
    ProjectStatus.EVOLVING: {ProjectStatus.COMPLETED, ProjectStatus.DEPLOYED, ProjectStatus.FAILED},
    ProjectStatus.FAILED: {ProjectStatus.PENDING, ProjectStatus.GENERATING},
}

_PROJECT_FIELDS = {f.name for f in dataclass_fields(Project)}
_REQUEST_FIELDS = {f.name for f in dataclass_fields(GenerationRequestRecord)}


class InMemoryProjectStore(ProjectStoreInterface):
    """An in-memory store for projects, candidates, evolution runs and workflow records."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self._projects: Dict[str, Project] = {}
        self._candidates: Dict[str, List[Candidate]] = {}
        self._runs: Dict[str, EvolutionRun] = {}
        self._individuals: Dict[str, Individual] = {}
        self._requests: Dict[str, GenerationRequestRecord] = {}
        self._workflow_runs: Dict[str, WorkflowRun] = {}
        logger.info(f"{type(self).__name__} initialized.")

    # --- projects ---

    async def create_project(self, name: str, requirements: str, metadata: Optional[Dict[str, Any]] = None) -> Project:
        project = Project(id=new_id("proj"), name=name, requirements=requirements, metadata=dict(metadata or {}))
        self._projects[project.id] = project
        logger.info(f"Created project {project.id} ('{name}')")
        self._changed()
        return project

    async def get(self, project_id: str) -> Optional[Project]:
        project = self._projects.get(project_id)
        if project is None:
            logger.warning(f"Project with ID: {project_id} not found in store.")
        return project

    async def update(self, project_id: str, fields: Dict[str, Any]) -> Project:
        project = self._projects.get(project_id)
        if project is None:
            raise ValidationError(f"Project {project_id} does not exist")
        unknown = set(fields) - _PROJECT_FIELDS
        if unknown or "id" in fields:
            raise ValidationError(f"Cannot update project fields: {sorted(unknown | ({'id'} & set(fields)))}")

        if "status" in fields:
            new_status = ProjectStatus(fields["status"])
            if new_status != project.status and new_status not in PROJECT_TRANSITIONS[project.status]:
                raise ValidationError(f"Project {project_id} cannot move from {project.status.value} to {new_status.value}")
            fields = {**fields, "status": new_status}

        updated = replace(project, **{**fields, "updated_at": utc_now()})
        self._projects[project_id] = updated
        logger.debug(f"Project {project_id} updated: {sorted(fields)}")
        self._changed()
        return updated

    async def list_projects(self, status: Optional[ProjectStatus] = None) -> List[Project]:
        projects = list(self._projects.values())
        if status is not None:
            projects = [p for p in projects if p.status == ProjectStatus(status)]
        return projects

    # --- candidates ---

    async def save_candidates(self, project_id: str, candidates: List[Candidate]) -> None:
        self._candidates.setdefault(project_id, []).extend(candidates)
        logger.info(f"Saved {len(candidates)} candidate(s) for project {project_id}")
        self._changed()

    async def get_candidates(self, project_id: str) -> List[Candidate]:
        return list(self._candidates.get(project_id, []))

    async def delete_candidates(self, project_id: str) -> int:
        removed = len(self._candidates.pop(project_id, []))
        logger.info(f"Deleted {removed} candidate(s) for project {project_id}")
        self._changed()
        return removed

    # --- evolution ---

    async def save_evolution_run(self, run: EvolutionRun) -> None:
        self._runs[run.id] = replace(run, fitness_history=list(run.fitness_history))
        logger.debug(f"Saved evolution run {run.id} at generation {run.current_generation} ({run.status.value})")
        self._changed()

    async def get_evolution_run(self, run_id: str) -> Optional[EvolutionRun]:
        return self._runs.get(run_id)

    async def list_evolution_runs(self, status: Optional[RunStatus] = None) -> List[EvolutionRun]:
        runs = list(self._runs.values())
        if status is not None:
            runs = [r for r in runs if r.status == RunStatus(status)]
        return runs

    async def save_individuals(self, individuals: List[Individual]) -> None:
        # Individuals are append-only; a later save of the same id refreshes its scores
        for individual in individuals:
            self._individuals[individual.id] = individual
        logger.debug(f"Saved {len(individuals)} individual(s)")
        self._changed()

    async def list_individuals(self, run_id: str) -> List[Individual]:
        return [i for i in self._individuals.values() if i.evolution_run_id == run_id]

    # --- generation requests and workflow runs ---

    async def save_generation_request(self, record: GenerationRequestRecord) -> None:
        self._requests[record.id] = record
        logger.debug(f"Saved generation request {record.id} for project {record.project_id}")
        self._changed()

    async def update_generation_request(self, request_id: str, fields: Dict[str, Any]) -> GenerationRequestRecord:
        record = self._requests.get(request_id)
        if record is None:
            raise ValidationError(f"Generation request {request_id} does not exist")
        unknown = set(fields) - _REQUEST_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update generation request fields: {sorted(unknown)}")
        updated = replace(record, **fields)
        self._requests[request_id] = updated
        self._changed()
        return updated

    async def list_generation_requests(self, project_id: Optional[str] = None) -> List[GenerationRequestRecord]:
        records = list(self._requests.values())
        if project_id is not None:
            records = [r for r in records if r.project_id == project_id]
        return records

    async def save_workflow_run(self, run: WorkflowRun) -> None:
        self._workflow_runs[run.id] = run
        logger.debug(f"Saved workflow run {run.id} ({run.status.value})")
        self._changed()

    async def get_workflow_run(self, workflow_id: str) -> Optional[WorkflowRun]:
        return self._workflow_runs.get(workflow_id)

    def _changed(self) -> None:
        """Hook called after every mutation."""

    async def execute(self, *args, **kwargs) -> Any:
        logger.warning("InMemoryProjectStore.execute() called, but this agent uses specific methods for store operations.")
        raise NotImplementedError("InMemoryProjectStore does not have a generic execute. Use specific methods like create_project, update etc.")


class JsonFileProjectStore(InMemoryProjectStore):
    """In-memory store that writes a JSON snapshot to disk after every change.

    Projects, candidates, evolution runs, individuals and generation requests are
    reloaded on start. Workflow runs are written as summaries for auditing only.
    """

    def __init__(self, path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.path = path or settings.DATABASE_PATH
        if os.path.exists(self.path):
            self._load()

    def _changed(self) -> None:
        snapshot = {
            "projects": [asdict(p) for p in self._projects.values()],
            "candidates": {pid: [asdict(c) for c in cs] for pid, cs in self._candidates.items()},
            "evolution_runs": [asdict(r) for r in self._runs.values()],
            "individuals": [asdict(i) for i in self._individuals.values()],
            "generation_requests": [asdict(r) for r in self._requests.values()],
            "workflow_runs": [_workflow_run_summary(w) for w in self._workflow_runs.values()],
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(snapshot, handle, default=_json_default, indent=2)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write store snapshot to {self.path}: {e}", exc_info=True)
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise PersistenceError(f"Could not write {self.path}: {e}") from e

    def _load(self) -> None:
        try:
            with open(self.path, encoding="utf-8") as handle:
                snapshot = json.load(handle)
            for data in snapshot.get("projects", []):
                project = _project_from_dict(data)
                self._projects[project.id] = project
            for project_id, items in snapshot.get("candidates", {}).items():
                self._candidates[project_id] = [_candidate_from_dict(c) for c in items]
            for data in snapshot.get("evolution_runs", []):
                run = _run_from_dict(data)
                self._runs[run.id] = run
            for data in snapshot.get("individuals", []):
                individual = _individual_from_dict(data)
                self._individuals[individual.id] = individual
            for data in snapshot.get("generation_requests", []):
                record = _request_from_dict(data)
                self._requests[record.id] = record
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load store snapshot from {self.path}: {e}", exc_info=True)
            raise PersistenceError(f"Could not load {self.path}: {e}") from e
        logger.info(f"Loaded {len(self._projects)} project(s) and {len(self._runs)} evolution run(s) from {self.path}")


def create_store(config: Optional[Dict[str, Any]] = None) -> InMemoryProjectStore:
    database_type = settings.get_setting("DATABASE_TYPE", "in_memory")
    if database_type == "in_memory":
        return InMemoryProjectStore(config)
    if database_type == "json_file":
        return JsonFileProjectStore(settings.get_setting("DATABASE_PATH"), config)
    raise ValidationError(f"Unknown DATABASE_TYPE: {database_type}")


# --- (de)serialization helpers ---

def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _vector_from_dict(data: Optional[Dict[str, float]]) -> Optional[EvaluationVector]:
    return EvaluationVector(**data) if data else None


def _project_from_dict(data: Dict[str, Any]) -> Project:
    spec = data.get("specification")
    return Project(
        **{**data,
           "status": ProjectStatus(data["status"]),
           "specification": Specification(**spec) if spec else None,
           "created_at": _parse_datetime(data["created_at"]),
           "updated_at": _parse_datetime(data["updated_at"]),
           "completed_at": _parse_datetime(data.get("completed_at"))}
    )


def _candidate_from_dict(data: Dict[str, Any]) -> Candidate:
    return Candidate(
        **{**data,
           "evaluation_vector": _vector_from_dict(data.get("evaluation_vector")),
           "parent_ids": tuple(data.get("parent_ids", ()))}
    )


def _run_from_dict(data: Dict[str, Any]) -> EvolutionRun:
    return EvolutionRun(
        **{**data,
           "strategy": EvolutionStrategyName(data["strategy"]),
           "status": RunStatus(data["status"]),
           "created_at": _parse_datetime(data["created_at"]),
           "updated_at": _parse_datetime(data["updated_at"])}
    )


def _individual_from_dict(data: Dict[str, Any]) -> Individual:
    return Individual(**{**data, "evaluation_vector": _vector_from_dict(data.get("evaluation_vector"))})


def _request_from_dict(data: Dict[str, Any]) -> GenerationRequestRecord:
    return GenerationRequestRecord(
        **{**data,
           "started_at": _parse_datetime(data["started_at"]),
           "completed_at": _parse_datetime(data.get("completed_at"))}
    )


def _workflow_run_summary(run: WorkflowRun) -> Dict[str, Any]:
    return {
        "id": run.id,
        "name": run.name,
        "status": run.status.value,
        "steps": [
            {"name": s.name, "status": s.status.value, "attempt_count": s.attempt_count,
             "error": s.error, "compensated": s.compensated}
            for s in run.steps
        ],
        "failure": run.failure.to_dict() if run.failure else None,
        "compensation_completed": run.compensation_completed,
        "cancel_requested": run.cancel_requested,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
    }
