import random
from collections import Counter

import pytest

from candidate_forge.core.errors import ValidationError
from candidate_forge.core.interfaces import Candidate, EvaluationVector, Individual, DIMENSIONS
from candidate_forge.selection_controller.agent import SelectionControllerAgent, overall_score


def individual(name, fitness, generation=0):
    return Individual(id=name, evolution_run_id="run_1", genome=[f"x_{name} = 1"],
                      generation_born=generation, fitness_score=fitness)


def scored_candidate(name, score):
    vector = EvaluationVector(**{dim: score for dim in DIMENSIONS})
    return Candidate(id=name, source_text="pass\n", evaluation_vector=vector)


@pytest.fixture
def controller():
    return SelectionControllerAgent()


@pytest.fixture
def population():
    return [individual("a", 1.0), individual("b", 0.4), individual("c", 0.3), individual("d", 0.2)]


def test_zero_pressure_samples_uniformly(controller, population):
    picks = controller.select_parents(population, 4000, selection_pressure=0, rng=random.Random(7))
    counts = Counter(p.id for p in picks)
    for name in "abcd":
        assert abs(counts[name] - 1000) < 200


def test_high_pressure_concentrates_on_the_fittest(controller, population):
    picks = controller.select_parents(population, 4000, selection_pressure=5, rng=random.Random(7))
    assert Counter(p.id for p in picks)["a"] > 3900


def test_all_zero_fitness_falls_back_to_random_choice(controller):
    flat = [individual("a", 0.0), individual("b", None), individual("c", 0.0)]
    picks = controller.select_parents(flat, 300, selection_pressure=3, rng=random.Random(1))
    assert len(picks) == 300
    assert set(p.id for p in picks) == {"a", "b", "c"}


def test_empty_population_yields_no_parents(controller):
    assert controller.select_parents([], 5) == []
    assert controller.select_parents([individual("a", 1.0)], 0) == []


def test_elites_prefer_newer_individuals_on_ties(controller):
    old = individual("old", 0.9, generation=1)
    new = individual("new", 0.9, generation=3)
    weak = individual("weak", 0.1, generation=4)

    elites = controller.select_elites([old, weak, new, new], 2)

    assert [e.id for e in elites] == ["new", "old"]
    assert controller.select_elites([old], 0) == []


def test_overall_score_weights():
    vector = EvaluationVector(
        compilation_success=100, test_coverage=50, documentation_quality=40,
        performance_score=80, design_quality=60, domain_compliance=0,
    )
    assert overall_score(vector) == pytest.approx(30 + 10 + 6 + 16 + 9)
    assert overall_score(None) == 0.0


def test_select_optimal_picks_highest_overall_score(controller):
    outcome = controller.select_optimal(
        [scored_candidate("low", 40), scored_candidate("high", 90), scored_candidate("mid", 70)], threshold=80
    )
    assert outcome.best.id == "high"
    assert outcome.score == pytest.approx(90)
    assert outcome.degraded is False


def test_select_optimal_marks_degraded_below_threshold(controller):
    outcome = controller.select_optimal([scored_candidate("only", 50)], threshold=80)
    assert outcome.best.id == "only"
    assert outcome.degraded is True


def test_select_optimal_rejects_an_empty_list(controller):
    with pytest.raises(ValidationError):
        controller.select_optimal([])
