import ast
import random

import pytest

from candidate_forge.core.errors import ValidationError
from candidate_forge.core.interfaces import (
    EvaluationVector,
    EvolutionRun,
    EvolutionStrategyName,
    Individual,
    RunStatus,
    DIMENSIONS,
)
from candidate_forge.evolution_engine.strategies import (
    ABTestingStrategy,
    HybridStrategy,
    SimulatedAnnealingStrategy,
    build_strategy,
    crossover,
    mutate,
    split_blocks,
)

SOURCE = '''import os


@staticmethod
def helper():
    return os.getcwd()


class Store:
    def get(self):
        return 1

    def put(self, value):
        return value
'''


def make_run(**overrides):
    values = dict(
        id="run_test", target="candidate", strategy=EvolutionStrategyName.GENETIC,
        population_size=10, max_generations=10, fitness_threshold=0.95,
        mutation_rate=0.5, crossover_rate=0.8, selection_pressure=2.0,
        elitism_fraction=0.1, diversity_maintenance=False, convergence_threshold=0.01,
        status=RunStatus.RUNNING,
    )
    values.update(overrides)
    return EvolutionRun(**values)


def make_individual(name, genome, fitness=0.5, **metadata):
    return Individual(id=name, evolution_run_id="run_test", genome=genome,
                      fitness_score=fitness, metadata=metadata)


def test_split_blocks_keeps_decorators_and_methods_together():
    blocks = split_blocks(SOURCE)

    assert blocks == [
        "import os",
        "@staticmethod\ndef helper():\n    return os.getcwd()",
        "class Store:\n    def get(self):\n        return 1\n\n    def put(self, value):\n        return value",
    ]


def test_joined_genome_is_valid_source():
    individual = make_individual("i", split_blocks(SOURCE))
    ast.parse(individual.source_text)


def test_split_blocks_of_blank_source_is_empty():
    assert split_blocks("\n\n   \n") == []


def test_crossover_combines_a_head_and_a_tail():
    rng = random.Random(3)
    first = ["a1", "a2", "a3"]
    second = ["b1", "b2", "b3"]
    for _ in range(50):
        child = crossover(first, second, rng)
        assert child[0] == "a1"
        assert set(child) <= set(first + second)
        assert len(child) == len(set(child))


def test_crossover_with_an_empty_parent_copies_the_other():
    assert crossover([], ["b"], random.Random(0)) == ["b"]


def test_mutate_leaves_a_single_block_without_pool_untouched():
    assert mutate(["only"], random.Random(0)) == ["only"]
    assert mutate(["only"], random.Random(0), gene_pool=["only"]) == ["only"]


def test_mutate_imports_from_gene_pool():
    child = mutate(["only"], random.Random(0), gene_pool=["only", "extra"])
    assert sorted(child) == ["extra", "only"]


def test_mutate_does_not_modify_its_input():
    genome = ["a", "b", "c"]
    for seed in range(20):
        mutate(genome, random.Random(seed), gene_pool=["d"])
    assert genome == ["a", "b", "c"]


def test_default_fitness_is_normalised_mean():
    vector = EvaluationVector(**{name: 50 for name in DIMENSIONS})
    assert build_strategy("genetic").fitness(vector) == pytest.approx(0.5)


def test_ab_testing_fitness_weighs_usability_and_performance():
    vector = EvaluationVector(usability_score=80, performance_score=60)
    assert ABTestingStrategy().fitness(vector) == pytest.approx(0.7)


def test_custom_fitness_weights_are_normalised():
    strategy = build_strategy("genetic", fitness_weights={"test_coverage": 2, "design_quality": 2})
    vector = EvaluationVector(test_coverage=100, design_quality=50)
    assert strategy.fitness(vector) == pytest.approx(0.75)


@pytest.mark.parametrize("weights", [{"speed": 1.0}, {"test_coverage": -1.0}, {"test_coverage": 0.0}])
def test_invalid_fitness_weights_are_rejected(weights):
    with pytest.raises(ValidationError):
        build_strategy("genetic", fitness_weights=weights)


def test_build_strategy_by_name():
    assert isinstance(build_strategy("hybrid"), HybridStrategy)
    assert build_strategy(EvolutionStrategyName.DIFFERENTIAL).name == EvolutionStrategyName.DIFFERENTIAL
    with pytest.raises(ValidationError):
        build_strategy("random_walk")


def test_seed_copies_seeds_then_fills_with_mutations():
    seeds = [["a", "b"], ["c"]]
    offspring = build_strategy("genetic").seed(seeds, 5, make_run(), random.Random(1))

    assert len(offspring) == 5
    assert offspring[0].genome == ["a", "b"]
    assert offspring[1].genome == ["c"]
    assert [o.metadata["origin"] for o in offspring] == ["seed", "seed"] + ["seed_mutation"] * 3
    assert all(set(o.genome) <= {"a", "b", "c"} for o in offspring)


def test_seed_with_more_seeds_than_slots_truncates():
    offspring = build_strategy("genetic").seed([["a"], ["b"], ["c"]], 2, make_run(), random.Random(1))
    assert [o.genome for o in offspring] == [["a"], ["b"]]


def test_annealing_temperature_cools_to_a_floor():
    strategy = SimulatedAnnealingStrategy()
    assert strategy.temperature(make_run(current_generation=0)) == pytest.approx(1.0)
    assert strategy.temperature(make_run(current_generation=5)) == pytest.approx(0.5)
    assert strategy.temperature(make_run(current_generation=10)) == pytest.approx(0.01)


def test_ab_testing_parents_come_from_the_winning_arm():
    strategy = ABTestingStrategy()
    population = [
        make_individual("a1", ["x"], 0.2, arm="A"),
        make_individual("a2", ["y"], 0.4, arm="A"),
        make_individual("b1", ["z"], 0.9, arm="B"),
    ]

    assert strategy.winning_arm(population) == "B"
    parents = strategy.select(population, 10, make_run(), random.Random(0))
    assert {p.id for p in parents} == {"b1"}


def test_ab_testing_ties_go_to_arm_a():
    strategy = ABTestingStrategy()
    population = [make_individual("a", ["x"], 0.5, arm="A"), make_individual("b", ["y"], 0.5, arm="B")]
    assert strategy.winning_arm(population) == "A"


@pytest.mark.parametrize("name", [strategy.value for strategy in EvolutionStrategyName])
def test_vary_produces_requested_offspring(name):
    strategy = build_strategy(name)
    parents = [
        make_individual("p1", ["a", "b"], 0.9, arm="A"),
        make_individual("p2", ["c", "d"], 0.5, arm="B"),
        make_individual("p3", ["e"], 0.1, arm="A"),
    ]
    gene_pool = ["a", "b", "c", "d", "e"]

    for generation in (0, 1):
        offspring = strategy.vary(parents, 7, make_run(current_generation=generation), random.Random(11), gene_pool)

        assert len(offspring) == 7
        for child in offspring:
            assert child.genome
            assert set(child.genome) <= set(gene_pool)
            assert set(child.parent_ids) <= {"p1", "p2", "p3"}
            assert child.metadata["evolution_strategy"] == name


def test_mutation_without_effect_is_not_labelled():
    # A single block with nothing to import cannot change, even at mutation rate 1
    strategy = build_strategy("genetic")
    parents = [make_individual("p1", ["only"], 0.9)]

    offspring = strategy.vary(parents, 3, make_run(mutation_rate=1.0, crossover_rate=0.0), random.Random(5), [])

    assert [child.metadata["operator"] for child in offspring] == ["clone"] * 3


def test_effective_mutation_is_labelled():
    strategy = build_strategy("genetic")
    parents = [make_individual("p1", ["a", "b"], 0.9)]

    offspring = strategy.vary(parents, 3, make_run(mutation_rate=1.0, crossover_rate=0.0), random.Random(5), ["a", "b", "c"])

    for child in offspring:
        assert child.metadata["operator"] == "clone+mutation"
        assert child.genome != ["a", "b"]
