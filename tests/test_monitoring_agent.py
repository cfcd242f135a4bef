import asyncio
from datetime import timedelta

import pytest

from candidate_forge.core.interfaces import (
    EvolutionRun,
    EvolutionStrategyName,
    Project,
    ProjectStatus,
    RunStatus,
    StepEvent,
    utc_now,
)
from candidate_forge.monitoring_agent.agent import (
    MonitoringAgent,
    analyze_performance,
    compute_metrics,
    system_health,
)


def project(status, quality=None, minutes=1, finished_offset=0):
    created = utc_now() + timedelta(minutes=finished_offset)
    finished = status in (ProjectStatus.COMPLETED, ProjectStatus.DEPLOYED)
    return Project(
        id=f"proj_{status.value}_{finished_offset}", name="p", requirements="r", status=status,
        quality_score=quality, created_at=created,
        completed_at=created + timedelta(minutes=minutes) if finished else None,
    )


def evolution_run(status, baseline, best):
    return EvolutionRun(
        id=f"run_{status.value}_{best}", target="proj", strategy=EvolutionStrategyName.GENETIC,
        population_size=4, max_generations=2, fitness_threshold=0.9, mutation_rate=0.1,
        crossover_rate=0.8, selection_pressure=2.0, elitism_fraction=0.1,
        diversity_maintenance=False, convergence_threshold=0.01,
        status=status, baseline_fitness=baseline, best_fitness_achieved=best,
    )


@pytest.mark.parametrize("success_rate, quality, expected", [
    (0.95, 90, "excellent"),
    (0.95, 80, "good"),
    (0.8, 90, "good"),
    (0.6, 70, "fair"),
    (0.5, 90, "poor"),
    (1.0, 60, "poor"),
])
def test_system_health_levels(success_rate, quality, expected):
    assert system_health(success_rate, quality) == expected


def test_compute_metrics_over_a_snapshot():
    projects = [
        project(ProjectStatus.COMPLETED, 90, finished_offset=0),
        project(ProjectStatus.DEPLOYED, 80, finished_offset=1),
        project(ProjectStatus.FAILED, finished_offset=2),
        project(ProjectStatus.GENERATING, finished_offset=3),
    ]
    runs = [
        evolution_run(RunStatus.COMPLETED, 0.4, 0.6),
        evolution_run(RunStatus.COMPLETED, 0.5, 0.9),
        evolution_run(RunStatus.RUNNING, 0.5, 0.5),
    ]

    metrics = compute_metrics(projects, runs)

    assert metrics["total_projects"] == 4
    assert metrics["completed_projects"] == 2
    assert metrics["failed_projects"] == 1
    assert metrics["active_projects"] == 1
    assert metrics["average_quality"] == pytest.approx(85)
    assert metrics["success_rate"] == pytest.approx(2 / 3)
    assert metrics["total_evolution_runs"] == 3
    assert metrics["active_generations"] == 1
    assert metrics["average_fitness_improvement"] == pytest.approx(0.3)
    assert metrics["system_health"] == "fair"


def test_empty_snapshot():
    metrics = compute_metrics([], [])
    assert metrics["success_rate"] == 0.0
    assert metrics["average_quality"] == 0.0
    assert metrics["system_health"] == "poor"


def test_performance_flags_bottlenecks_and_declining_quality():
    projects = [
        project(ProjectStatus.COMPLETED, 90, minutes=10, finished_offset=0),
        project(ProjectStatus.COMPLETED, 60, minutes=10, finished_offset=20),
        project(ProjectStatus.FAILED, finished_offset=40),
    ]

    report = analyze_performance(projects)

    assert report["average_generation_seconds"] == pytest.approx(600)
    assert report["generations_per_hour"] == pytest.approx(6)
    assert report["quality_trend"] == "declining"
    assert report["bottlenecks"] == ["slow_generation", "high_failure_rate"]
    assert report["optimization_suggestions"] == [
        "Optimize generation algorithms",
        "Increase parallel processing",
        "Improve requirements validation",
        "Enhance error handling",
        "Investigate quality regression",
        "Update generation models",
    ]


def test_performance_of_a_healthy_system():
    projects = [
        project(ProjectStatus.COMPLETED, 80, finished_offset=0),
        project(ProjectStatus.DEPLOYED, 90, finished_offset=5),
    ]

    report = analyze_performance(projects)

    assert report["quality_trend"] == "improving"
    assert report["bottlenecks"] == []
    assert report["optimization_suggestions"] == []


def test_monitoring_agent_keeps_reported_events():
    agent = MonitoringAgent()

    async def scenario():
        await agent.report(StepEvent(workflow_id="wf_1", step="a", kind="start", attempt=1))
        await agent.report(StepEvent(workflow_id="wf_2", step="b", kind="failure", attempt=2, error="boom"))
        await agent.report(StepEvent(workflow_id="wf_1", step="a", kind="success", attempt=1))
        return await agent.report_status([project(ProjectStatus.COMPLETED, 95)], [])

    status = asyncio.run(scenario())

    assert [e.kind for e in agent.events_for("wf_1")] == ["start", "success"]
    assert len(agent.events) == 3
    assert status["system_health"] == "excellent"
    assert status["performance"]["quality_trend"] == "stable"


def test_execute_dispatches_known_actions_only():
    agent = MonitoringAgent()

    async def scenario():
        status = await agent.execute("report_status", projects=[], runs=[])
        with pytest.raises(ValueError):
            await agent.execute("log_metrics", metrics={"cpu": 1})
        return status

    assert asyncio.run(scenario())["total_projects"] == 0
