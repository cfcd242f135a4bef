import asyncio

import pytest

from candidate_forge.core.interfaces import Candidate, DIMENSIONS
from candidate_forge.evaluator_agent.agent import EvaluatorAgent


def make_candidate(source):
    return Candidate(id="cand_1", source_text=source, strategy="template")


def test_every_dimension_is_bounded_and_maintainability_is_exact_mean(inventory_source, minimal_source, broken_source):
    scorer = EvaluatorAgent(domain_markers=["Inventory", "Product"])
    for source in (inventory_source, minimal_source, broken_source, "", "x = 1\n"):
        vector = scorer.score(make_candidate(source))
        for name in DIMENSIONS:
            assert 0.0 <= getattr(vector, name) <= 100.0
        assert vector.maintainability_index == (
            vector.documentation_quality + vector.design_quality + vector.test_coverage
        ) / 3


def test_unparseable_source_still_gets_every_dimension(broken_source):
    vector = EvaluatorAgent(domain_markers=["Inventory"]).score(make_candidate(broken_source))

    assert vector.compilation_success == 0
    assert set(vector.as_dict()) == set(DIMENSIONS)
    assert vector.documentation_quality >= 30  # module docstring is still detected
    assert vector.domain_compliance == 100.0
    assert vector.performance_score == 100


def test_well_formed_module_scores_high(inventory_source):
    vector = EvaluatorAgent(domain_markers=["Inventory", "Product"]).score(make_candidate(inventory_source))

    assert vector.compilation_success == 100
    assert vector.test_coverage == 20
    assert vector.design_quality == 75  # four classes is one more than the compact-module bonus allows
    assert vector.domain_compliance == 100
    assert vector.usability_score == 100
    assert vector.documentation_quality == 100


def test_test_coverage_is_capped():
    source = "\n\n".join(f"def test_case_{i}():\n    assert True" for i in range(12))
    assert EvaluatorAgent().score(make_candidate(source)).test_coverage == 100


def test_domain_compliance_is_share_of_markers_present(minimal_source):
    scorer = EvaluatorAgent(domain_markers=["Inventory", "Invoice"])
    assert scorer.score(make_candidate(minimal_source)).domain_compliance == 50.0


def test_performance_penalises_nested_loops_and_sleep():
    nested = "def pairs(items):\n    for a in items:\n        for b in items:\n            print(a, b)\n"
    sleepy = "import time\n\n\ndef wait():\n    time.sleep(1)\n"
    scorer = EvaluatorAgent()

    assert scorer.score(make_candidate(nested)).performance_score == 90
    assert scorer.score(make_candidate(sleepy)).performance_score == 80


def test_a_failing_probe_scores_zero_without_blocking_the_others(inventory_source):
    class FlakyEvaluator(EvaluatorAgent):
        def _assess_usability(self, source):
            raise RuntimeError("probe exploded")

    vector = FlakyEvaluator(domain_markers=["Inventory"]).score(make_candidate(inventory_source))

    assert vector.usability_score == 0
    assert vector.compilation_success == 100
    assert vector.test_coverage == 20


def test_scoring_is_deterministic(inventory_source):
    scorer = EvaluatorAgent(domain_markers=["Product"])
    candidate = make_candidate(inventory_source)
    assert scorer.score(candidate) == scorer.score(candidate)


def test_evaluate_candidate_returns_a_scored_copy(minimal_source):
    candidate = make_candidate(minimal_source)
    scored = asyncio.run(EvaluatorAgent().evaluate_candidate(candidate))

    assert candidate.evaluation_vector is None
    assert scored.evaluation_vector is not None
    assert scored.id == candidate.id
    assert scored.source_text == candidate.source_text


@pytest.mark.parametrize("markers", [None, []])
def test_default_markers_are_used_when_none_are_given(markers, minimal_source):
    scorer = EvaluatorAgent(domain_markers=markers)
    assert scorer.domain_markers == ["class ", "def ", '"""']
