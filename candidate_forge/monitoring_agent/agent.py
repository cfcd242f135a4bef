# Monitoring Agent
import logging
import statistics
from typing import Dict, Any, Optional, List

from candidate_forge.core.interfaces import (
    ProgressSinkInterface,
    StepEvent,
    Project,
    ProjectStatus,
    EvolutionRun,
    RunStatus,
)

logger = logging.getLogger(__name__)

SLOW_GENERATION_SECONDS = 300
MIN_SUCCESS_RATE = 0.7
MIN_AVERAGE_QUALITY = 75

# (name, minimum success rate, minimum average quality), checked in order
HEALTH_LEVELS = (
    ("excellent", 0.9, 85),
    ("good", 0.7, 75),
    ("fair", 0.5, 65),
)

SUGGESTIONS = {
    "slow_generation": ["Optimize generation algorithms", "Increase parallel processing"],
    "high_failure_rate": ["Improve requirements validation", "Enhance error handling"],
    "low_quality_output": ["Tune quality assessment criteria", "Improve generation strategies"],
    "declining_quality": ["Investigate quality regression", "Update generation models"],
}

_FINISHED = (ProjectStatus.COMPLETED, ProjectStatus.DEPLOYED)
_ACTIVE = (ProjectStatus.GENERATING, ProjectStatus.TESTING, ProjectStatus.EVOLVING)


class MonitoringAgent(ProgressSinkInterface):
    """Progress sink that logs every workflow step event and keeps them for inspection."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.events: List[StepEvent] = []
        logger.info("MonitoringAgent initialized.")

    async def report(self, event: StepEvent) -> None:
        self.events.append(event)
        message = f"[{event.workflow_id}] step '{event.step}' {event.kind} (attempt {event.attempt})"
        if event.error:
            message += f": {event.error}"
        if event.kind in ("failure", "compensation_failed", "workflow_failed"):
            logger.error(message)
        elif event.kind == "retry":
            logger.warning(message)
        else:
            logger.info(message)

    def events_for(self, workflow_id: str) -> List[StepEvent]:
        return [e for e in self.events if e.workflow_id == workflow_id]

    async def report_status(self, projects: List[Project], runs: List[EvolutionRun]) -> Dict[str, Any]:
        status_report = compute_metrics(projects, runs)
        status_report["performance"] = analyze_performance(projects)
        logger.info(f"System Status: {status_report['system_health']} "
                    f"({status_report['total_projects']} projects, {status_report['active_generations']} active generations)")
        return status_report

    async def execute(self, action: str, **kwargs) -> Any:
        if action == "report":
            return await self.report(kwargs["event"])
        elif action == "report_status":
            return await self.report_status(kwargs.get("projects", []), kwargs.get("runs", []))
        else:
            raise ValueError(f"Unknown action: {action}")


def system_health(success_rate: float, average_quality: float) -> str:
    for name, min_success, min_quality in HEALTH_LEVELS:
        if success_rate > min_success and average_quality > min_quality:
            return name
    return "poor"


def compute_metrics(projects: List[Project], runs: List[EvolutionRun]) -> Dict[str, Any]:
    """Aggregates a snapshot of projects and evolution runs. Holds no state between calls."""
    finished = [p for p in projects if p.status in _FINISHED]
    failed = [p for p in projects if p.status == ProjectStatus.FAILED]
    scored = [p.quality_score for p in projects if p.quality_score is not None]
    concluded = len(finished) + len(failed)

    average_quality = statistics.fmean(scored) if scored else 0.0
    success_rate = len(finished) / concluded if concluded else 0.0
    completed_runs = [r for r in runs if r.status == RunStatus.COMPLETED]

    return {
        "total_projects": len(projects),
        "completed_projects": len(finished),
        "failed_projects": len(failed),
        "active_projects": sum(1 for p in projects if p.status in _ACTIVE),
        "average_quality": average_quality,
        "success_rate": success_rate,
        "total_evolution_runs": len(runs),
        "active_generations": sum(1 for r in runs if r.status == RunStatus.RUNNING),
        "average_fitness_improvement": (
            statistics.fmean(r.fitness_improvement for r in completed_runs) if completed_runs else 0.0
        ),
        "system_health": system_health(success_rate, average_quality),
    }


def analyze_performance(projects: List[Project]) -> Dict[str, Any]:
    finished = sorted(
        (p for p in projects if p.status in _FINISHED and p.completed_at is not None),
        key=lambda p: p.completed_at,
    )
    durations = [(p.completed_at - p.created_at).total_seconds() for p in finished]
    average_seconds = statistics.fmean(durations) if durations else 0.0

    failed = sum(1 for p in projects if p.status == ProjectStatus.FAILED)
    concluded = len(finished) + failed
    qualities = [p.quality_score for p in finished if p.quality_score is not None]

    bottlenecks = []
    if average_seconds > SLOW_GENERATION_SECONDS:
        bottlenecks.append("slow_generation")
    if concluded and len(finished) / concluded < MIN_SUCCESS_RATE:
        bottlenecks.append("high_failure_rate")
    if qualities and statistics.fmean(qualities) < MIN_AVERAGE_QUALITY:
        bottlenecks.append("low_quality_output")

    trend = _quality_trend(qualities)
    suggestions = [s for name in bottlenecks for s in SUGGESTIONS[name]]
    if trend == "declining":
        suggestions.extend(SUGGESTIONS["declining_quality"])

    return {
        "average_generation_seconds": average_seconds,
        "generations_per_hour": 3600.0 / average_seconds if average_seconds else 0.0,
        "quality_trend": trend,
        "bottlenecks": bottlenecks,
        "optimization_suggestions": suggestions,
    }


def _quality_trend(qualities: List[float]) -> str:
    if len(qualities) < 2:
        return "stable"
    middle = len(qualities) // 2
    earlier, later = statistics.fmean(qualities[:middle]), statistics.fmean(qualities[middle:])
    if later < earlier:
        return "declining"
    if later > earlier:
        return "improving"
    return "stable"
