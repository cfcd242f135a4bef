# Evolution strategies
"""
One implementation per evolution strategy. The optimizer only relies on
``seed``, ``select``, ``vary`` and ``fitness``; everything strategy specific
(selection shape, variation operators, fitness mapping) lives here.

A genome is the ordered list of top-level source blocks of a candidate, so
variation works on whole functions and classes rather than on characters.
"""
import logging
import math
from typing import List, Dict, Optional

from candidate_forge.core.interfaces import (
    EvolutionStrategyInterface,
    EvolutionStrategyName,
    EvolutionRun,
    EvaluationVector,
    Individual,
    Offspring,
    DIMENSIONS,
)
from candidate_forge.core.errors import ValidationError
from candidate_forge.selection_controller.agent import SelectionControllerAgent
from candidate_forge.config import settings

logger = logging.getLogger(__name__)


def split_blocks(source_text: str) -> List[str]:
    """Splits source into top-level blocks.

    A block starts at a non-indented line that follows a blank line, so
    decorators and comments written directly above a definition stay with it.
    """
    blocks: List[str] = []
    current: List[str] = []
    previous_blank = True
    for line in source_text.splitlines():
        if not line.strip():
            current.append(line)
            previous_blank = True
            continue
        if not line[0].isspace() and previous_blank and any(l.strip() for l in current):
            blocks.append("\n".join(current).strip("\n"))
            current = []
        current.append(line)
        previous_blank = False
    if any(l.strip() for l in current):
        blocks.append("\n".join(current).strip("\n"))
    return blocks


def _dedupe(genome: List[str]) -> List[str]:
    seen = set()
    result = []
    for block in genome:
        if block not in seen:
            seen.add(block)
            result.append(block)
    return result


def crossover(genome_a: List[str], genome_b: List[str], rng) -> List[str]:
    """One-point crossover over blocks: a head of ``genome_a`` plus a tail of ``genome_b``."""
    if not genome_a or not genome_b:
        return list(genome_a or genome_b)
    cut_a = rng.randint(1, len(genome_a))
    cut_b = rng.randint(0, len(genome_b) - 1)
    child = _dedupe(genome_a[:cut_a] + genome_b[cut_b:])
    return child or list(genome_a)


def mutate(genome: List[str], rng, gene_pool: Optional[List[str]] = None) -> List[str]:
    """Drops a block, swaps two blocks, or imports a block from the gene pool."""
    child = list(genome)
    importable = [block for block in (gene_pool or []) if block not in child]
    operations = []
    if len(child) > 1:
        operations.extend(["drop", "swap"])
    if importable:
        operations.append("insert")
    if not operations:
        return child

    operation = rng.choice(operations)
    if operation == "drop":
        del child[rng.randrange(len(child))]
    elif operation == "swap":
        i, j = rng.sample(range(len(child)), 2)
        child[i], child[j] = child[j], child[i]
    else:
        child.insert(rng.randint(0, len(child)), rng.choice(importable))
    return child


class EvolutionStrategy(EvolutionStrategyInterface):
    """Shared fitness mapping, seeding and roulette selection."""

    name: EvolutionStrategyName
    default_fitness_weights: Optional[Dict[str, float]] = None  # None means the unweighted mean

    def __init__(self, fitness_weights: Optional[Dict[str, float]] = None,
                 selector: Optional[SelectionControllerAgent] = None):
        weights = fitness_weights if fitness_weights is not None else self.default_fitness_weights
        if weights is not None:
            unknown = set(weights) - set(DIMENSIONS)
            if unknown:
                raise ValidationError(f"Unknown fitness dimensions: {sorted(unknown)}")
            if any(w < 0 for w in weights.values()) or sum(weights.values()) <= 0:
                raise ValidationError("Fitness weights must be non-negative and sum to a positive value")
        self.fitness_weights = weights
        self.selector = selector or SelectionControllerAgent()

    def fitness(self, vector: EvaluationVector) -> float:
        if self.fitness_weights is None:
            value = vector.overall() / 100.0
        else:
            total = sum(self.fitness_weights.values())
            value = sum(getattr(vector, name) * w for name, w in self.fitness_weights.items()) / total / 100.0
        return min(1.0, max(0.0, value))

    def seed(self, seeds: List[List[str]], size: int, run: EvolutionRun, rng) -> List[Offspring]:
        """Copies every seed once, then fills the population with mutated seeds."""
        gene_pool = _dedupe([block for genome in seeds for block in genome])
        offspring = [Offspring(genome=list(genome), metadata={"origin": "seed", "seed_index": i})
                     for i, genome in enumerate(seeds[:size])]
        while len(offspring) < size:
            index = rng.randrange(len(seeds))
            offspring.append(Offspring(
                genome=mutate(seeds[index], rng, gene_pool),
                metadata={"origin": "seed_mutation", "seed_index": index},
            ))
        return offspring

    def select(self, population: List[Individual], count: int, run: EvolutionRun, rng) -> List[Individual]:
        return self.selector.select_parents(population, count, run.selection_pressure, rng)

    def _maybe_mutate(self, genome: List[str], run: EvolutionRun, rng, gene_pool: List[str]) -> List[str]:
        if rng.random() < run.mutation_rate:
            return mutate(genome, rng, gene_pool)
        return genome

    def _offspring(self, genome: List[str], parents: List[Individual], operator: str) -> Offspring:
        return Offspring(
            genome=genome,
            parent_ids=[p.id for p in parents],
            metadata={"evolution_strategy": self.name.value, "operator": operator},
        )


class GeneticStrategy(EvolutionStrategy):
    name = EvolutionStrategyName.GENETIC

    def vary(self, parents: List[Individual], count: int, run: EvolutionRun, rng, gene_pool: List[str]) -> List[Offspring]:
        offspring = []
        for _ in range(count):
            first, second = rng.choice(parents), rng.choice(parents)
            if first.id != second.id and rng.random() < run.crossover_rate:
                genome = crossover(first.genome, second.genome, rng)
                used, operator = [first, second], "crossover"
            else:
                genome, used, operator = list(first.genome), [first], "clone"
            mutated = self._maybe_mutate(genome, run, rng, gene_pool)
            if mutated != genome:
                operator = f"{operator}+mutation"
            offspring.append(self._offspring(mutated, used, operator))
        return offspring


class DifferentialStrategy(EvolutionStrategy):
    name = EvolutionStrategyName.DIFFERENTIAL

    def vary(self, parents: List[Individual], count: int, run: EvolutionRun, rng, gene_pool: List[str]) -> List[Offspring]:
        offspring = []
        for k in range(count):
            target = parents[k % len(parents)]
            if len(parents) >= 3:
                a, b, c = rng.sample(parents, 3)
            else:
                a, b, c = (rng.choice(parents) for _ in range(3))
            # donor = a + (b - c), expressed over blocks
            donor = _dedupe(a.genome + [block for block in b.genome if block not in c.genome])
            genome = self._binomial_crossover(target.genome, donor, run.crossover_rate, rng)
            genome = self._maybe_mutate(genome, run, rng, gene_pool)
            offspring.append(self._offspring(genome, _dedupe_individuals([target, a, b, c]), "differential"))
        return offspring

    def _binomial_crossover(self, target: List[str], donor: List[str], rate: float, rng) -> List[str]:
        if not donor:
            return list(target)
        length = max(len(target), len(donor))
        forced = rng.randrange(len(donor))
        child = []
        for i in range(length):
            take_donor = i < len(donor) and (i == forced or rng.random() < rate)
            if take_donor:
                child.append(donor[i])
            elif i < len(target):
                child.append(target[i])
        return _dedupe(child) or list(target)


class ParticleSwarmStrategy(EvolutionStrategy):
    name = EvolutionStrategyName.PARTICLE_SWARM

    def select(self, population: List[Individual], count: int, run: EvolutionRun, rng) -> List[Individual]:
        return self.selector.select_elites(population, count)

    def vary(self, parents: List[Individual], count: int, run: EvolutionRun, rng, gene_pool: List[str]) -> List[Offspring]:
        swarm_best = max(parents, key=lambda p: (p.fitness_score or 0.0, p.generation_born))
        offspring = []
        for k in range(count):
            particle = parents[k % len(parents)]
            genome = list(particle.genome)
            for position, block in enumerate(swarm_best.genome):
                if block not in genome and rng.random() < run.crossover_rate:
                    genome.insert(min(position, len(genome)), block)
            genome = self._maybe_mutate(genome, run, rng, gene_pool)
            offspring.append(self._offspring(genome, _dedupe_individuals([particle, swarm_best]), "swarm_move"))
        return offspring


class SimulatedAnnealingStrategy(EvolutionStrategy):
    name = EvolutionStrategyName.SIMULATED_ANNEALING

    def temperature(self, run: EvolutionRun) -> float:
        progress = run.current_generation / run.max_generations if run.max_generations else 1.0
        return max(settings.ANNEALING_MIN_TEMPERATURE, settings.ANNEALING_INITIAL_TEMPERATURE * (1.0 - progress))

    def select(self, population: List[Individual], count: int, run: EvolutionRun, rng) -> List[Individual]:
        if not population or count <= 0:
            return []
        temperature = self.temperature(run)
        best = max(p.fitness_score or 0.0 for p in population)
        weights = [math.exp(((p.fitness_score or 0.0) - best) / temperature) for p in population]
        logger.debug(f"Boltzmann selection at temperature {temperature:.3f}")
        return rng.choices(population, weights=weights, k=count)

    def vary(self, parents: List[Individual], count: int, run: EvolutionRun, rng, gene_pool: List[str]) -> List[Offspring]:
        offspring = []
        for _ in range(count):
            parent = rng.choice(parents)
            offspring.append(self._offspring(mutate(parent.genome, rng, gene_pool), [parent], "neighbour"))
        return offspring


class ABTestingStrategy(EvolutionStrategy):
    name = EvolutionStrategyName.AB_TESTING
    default_fitness_weights = {"usability_score": 0.5, "performance_score": 0.5}
    ARMS = ("A", "B")

    def seed(self, seeds: List[List[str]], size: int, run: EvolutionRun, rng) -> List[Offspring]:
        offspring = super().seed(seeds, size, run, rng)
        for i, child in enumerate(offspring):
            child.metadata["arm"] = self.ARMS[i % 2]
        return offspring

    def winning_arm(self, population: List[Individual]) -> str:
        means = {}
        for arm in self.ARMS:
            scores = [p.fitness_score or 0.0 for p in population if p.metadata.get("arm") == arm]
            means[arm] = sum(scores) / len(scores) if scores else -1.0
        return "B" if means["B"] > means["A"] else "A"

    def select(self, population: List[Individual], count: int, run: EvolutionRun, rng) -> List[Individual]:
        winner = self.winning_arm(population)
        pool = [p for p in population if p.metadata.get("arm") == winner] or population
        logger.debug(f"A/B selection: arm {winner} wins with {len(pool)} members")
        return self.selector.select_parents(pool, count, run.selection_pressure, rng)

    def vary(self, parents: List[Individual], count: int, run: EvolutionRun, rng, gene_pool: List[str]) -> List[Offspring]:
        offspring = []
        for _ in range(count):
            parent = rng.choice(parents)
            child = self._offspring(self._maybe_mutate(list(parent.genome), run, rng, gene_pool), [parent], "arm_mutation")
            child.metadata["arm"] = parent.metadata.get("arm", self.ARMS[0])
            offspring.append(child)
        return offspring


class HybridStrategy(EvolutionStrategy):
    """Genetic variation on even generations, differential on odd ones."""
    name = EvolutionStrategyName.HYBRID

    def __init__(self, fitness_weights: Optional[Dict[str, float]] = None,
                 selector: Optional[SelectionControllerAgent] = None):
        super().__init__(fitness_weights, selector)
        self._genetic = GeneticStrategy(fitness_weights, self.selector)
        self._differential = DifferentialStrategy(fitness_weights, self.selector)

    def vary(self, parents: List[Individual], count: int, run: EvolutionRun, rng, gene_pool: List[str]) -> List[Offspring]:
        delegate = self._genetic if run.current_generation % 2 == 0 else self._differential
        offspring = delegate.vary(parents, count, run, rng, gene_pool)
        for child in offspring:
            child.metadata["evolution_strategy"] = self.name.value
            child.metadata["phase"] = delegate.name.value
        return offspring


def _dedupe_individuals(individuals: List[Individual]) -> List[Individual]:
    seen = set()
    result = []
    for individual in individuals:
        if individual.id not in seen:
            seen.add(individual.id)
            result.append(individual)
    return result


STRATEGIES = {
    EvolutionStrategyName.GENETIC: GeneticStrategy,
    EvolutionStrategyName.DIFFERENTIAL: DifferentialStrategy,
    EvolutionStrategyName.PARTICLE_SWARM: ParticleSwarmStrategy,
    EvolutionStrategyName.SIMULATED_ANNEALING: SimulatedAnnealingStrategy,
    EvolutionStrategyName.AB_TESTING: ABTestingStrategy,
    EvolutionStrategyName.HYBRID: HybridStrategy,
}


def build_strategy(name, fitness_weights: Optional[Dict[str, float]] = None,
                   selector: Optional[SelectionControllerAgent] = None) -> EvolutionStrategy:
    try:
        strategy_name = EvolutionStrategyName(name)
    except ValueError:
        raise ValidationError(f"Unknown evolution strategy: {name}") from None
    return STRATEGIES[strategy_name](fitness_weights, selector)
