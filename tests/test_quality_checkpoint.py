import random

import pytest

from candidate_forge.core.interfaces import CheckpointStatus, EvaluationVector, DIMENSIONS
from candidate_forge.quality_checkpoint.agent import QualityCheckpointAgent


def vector(score, **overrides):
    values = {name: score for name in DIMENSIONS}
    values.update(overrides)
    return EvaluationVector(**values)


@pytest.fixture
def checkpoint():
    return QualityCheckpointAgent()


def test_continue_when_batch_is_above_threshold(checkpoint):
    result = checkpoint.checkpoint([vector(85) for _ in range(10)], 80)

    assert result.status == CheckpointStatus.CONTINUE
    assert result.metrics.average_quality == pytest.approx(85)
    assert result.metrics.success_rate == 1.0
    assert result.metrics.critical_failures == []


def test_continue_with_ninety_percent_success_rate(checkpoint):
    # The non-compiling candidate keeps the batch average at 85 through its other dimensions
    rest = 85 * 8 / 7
    batch = [vector(85) for _ in range(9)] + [vector(rest, compilation_success=0)]

    result = checkpoint.checkpoint(batch, 80)

    assert result.status == CheckpointStatus.CONTINUE
    assert result.metrics.average_quality == pytest.approx(85)
    assert result.metrics.success_rate == pytest.approx(0.9)


def test_abort_on_a_single_non_compiling_candidate(checkpoint):
    result = checkpoint.checkpoint([vector(100, compilation_success=0)], 80)

    assert result.status == CheckpointStatus.ABORT
    assert result.metrics.average_quality == pytest.approx(87.5)
    assert len(result.metrics.critical_failures) == 1
    assert result.metrics.critical_failures[0].index == 0
    assert "compilation_failed" in result.metrics.critical_failures[0].reasons


def test_low_domain_compliance_is_critical(checkpoint):
    result = checkpoint.checkpoint([vector(60, domain_compliance=40)], 80)

    assert result.status == CheckpointStatus.ABORT
    assert result.metrics.critical_failures[0].reasons == ["domain_non_compliant"]


def test_near_threshold_without_critical_failures_continues(checkpoint):
    result = checkpoint.checkpoint([vector(75), vector(75)], 80)
    assert result.status == CheckpointStatus.CONTINUE


def test_retry_with_improvements_below_threshold(checkpoint):
    weak = vector(60, documentation_quality=40, test_coverage=40)

    result = checkpoint.checkpoint([weak, weak], 80)

    assert result.status == CheckpointStatus.RETRY_WITH_IMPROVEMENTS
    assert result.improvements == [
        "Add comprehensive documentation",
        "Increase test coverage",
        "Optimize performance",
    ]
    assert "Focus on quality improvements" in result.recommendations


def test_improvements_only_consider_candidates_below_threshold(checkpoint):
    strong = vector(95, documentation_quality=45)
    result = checkpoint.checkpoint([strong], 80)
    assert result.improvements == []


def test_empty_batch(checkpoint):
    result = checkpoint.checkpoint([], 80)

    assert result.status == CheckpointStatus.RETRY_WITH_IMPROVEMENTS
    assert result.metrics.average_quality == 0
    assert result.metrics.critical_failures == []


def test_distribution_and_variance_recommendation(checkpoint):
    result = checkpoint.checkpoint([vector(60), vector(100), vector(55)], 80)

    distribution = result.metrics.distribution
    assert distribution.min == 55
    assert distribution.max == 100
    assert distribution.median == 60
    assert distribution.std_dev == pytest.approx(20.1384, abs=1e-3)
    assert "Reduce quality variance between candidates" in result.recommendations


def test_checkpoint_is_idempotent(checkpoint):
    batch = [vector(70, compilation_success=0), vector(90), vector(40)]
    assert checkpoint.checkpoint(batch, 80) == checkpoint.checkpoint(batch, 80)


def test_checkpoint_does_not_mutate_input(checkpoint):
    batch = [vector(70), vector(20)]
    snapshot = list(batch)
    checkpoint.checkpoint(batch, 80)
    assert batch == snapshot


def test_abort_iff_critical_when_first_rules_do_not_fire(checkpoint):
    rng = random.Random(42)
    threshold = 80
    for _ in range(200):
        batch = []
        for _ in range(rng.randint(1, 6)):
            values = {name: rng.uniform(0, 100) for name in DIMENSIONS}
            if rng.random() < 0.2:
                values["compilation_success"] = 0.0
            batch.append(EvaluationVector(**values))

        result = checkpoint.checkpoint(batch, threshold)
        metrics = result.metrics
        if result.status == CheckpointStatus.ABORT:
            assert metrics.critical_failures
        rule_one = metrics.average_quality >= threshold and metrics.success_rate >= 0.8
        rule_two = not metrics.critical_failures and metrics.average_quality >= 0.9 * threshold
        if metrics.critical_failures and not rule_one and not rule_two:
            assert result.status == CheckpointStatus.ABORT
