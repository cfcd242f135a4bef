# Evolution Engine Agent
import asyncio
import difflib
import logging
import math
import random
from typing import List, Dict, Any, Optional

from candidate_forge.core.interfaces import (
    OptimizerInterface,
    ScorerInterface,
    ProjectStoreInterface,
    Candidate,
    EvolutionConfig,
    EvolutionRun,
    EvolutionStrategyName,
    Individual,
    Offspring,
    RunStatus,
    GENOME_BLOCK_SEPARATOR,
    new_id,
    utc_now,
)
from candidate_forge.core.errors import ValidationError, EvolutionStateError
from candidate_forge.config import settings
from candidate_forge.evaluator_agent.agent import EvaluatorAgent
from candidate_forge.selection_controller.agent import SelectionControllerAgent
from candidate_forge.evolution_engine.strategies import EvolutionStrategy, build_strategy, split_blocks, mutate

logger = logging.getLogger(__name__)


class EvolutionEngineAgent(OptimizerInterface):
    """Population-based optimizer over candidate source text.

    The engine owns every run's population and counters. Fitness comes from the
    scorer, mapped to [0, 1] by the run's strategy. Individuals of every
    generation are kept in the run's lineage and never dropped.
    """

    def __init__(self, scorer: Optional[ScorerInterface] = None,
                 selection_controller: Optional[SelectionControllerAgent] = None,
                 store: Optional[ProjectStoreInterface] = None,
                 config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.scorer = scorer or EvaluatorAgent()
        self.selection_controller = selection_controller or SelectionControllerAgent()
        self.store = store
        self._populations: Dict[str, List[Individual]] = {}
        self._lineage: Dict[str, List[Individual]] = {}
        self._strategies: Dict[str, EvolutionStrategy] = {}
        self._rngs: Dict[str, random.Random] = {}
        logger.info("EvolutionEngineAgent initialized.")

    @staticmethod
    def validate_config(config: EvolutionConfig, seeds: List[Candidate]) -> None:
        def check(condition: bool, message: str):
            if not condition:
                raise ValidationError(message)

        try:
            EvolutionStrategyName(config.strategy)
        except ValueError:
            raise ValidationError(f"Unknown evolution strategy: {config.strategy}") from None
        check(1 <= config.population_size <= 1000, f"population_size must be within [1, 1000], got {config.population_size}")
        check(1 <= config.max_generations <= 10000, f"max_generations must be within [1, 10000], got {config.max_generations}")
        for name in ("mutation_rate", "crossover_rate", "elitism_fraction", "fitness_threshold", "convergence_threshold"):
            value = getattr(config, name)
            check(0.0 <= value <= 1.0, f"{name} must be within [0, 1], got {value}")
        check(0.0 <= config.selection_pressure <= 10.0, f"selection_pressure must be within [0, 10], got {config.selection_pressure}")
        check(config.convergence_window >= 1, f"convergence_window must be at least 1, got {config.convergence_window}")
        check(any(seed.source_text and seed.source_text.strip() for seed in seeds), "At least one non-empty seed candidate is required")

    async def start(self, config: EvolutionConfig, seeds: List[Candidate]) -> EvolutionRun:
        self.validate_config(config, seeds)
        strategy = build_strategy(config.strategy, config.fitness_weights, self.selection_controller)
        seeds = [seed for seed in seeds if seed.source_text and seed.source_text.strip()]

        run = EvolutionRun(
            id=new_id("run"),
            target=config.target,
            strategy=EvolutionStrategyName(config.strategy),
            population_size=config.population_size,
            max_generations=config.max_generations,
            fitness_threshold=config.fitness_threshold,
            mutation_rate=config.mutation_rate,
            crossover_rate=config.crossover_rate,
            selection_pressure=config.selection_pressure,
            elitism_fraction=config.elitism_fraction,
            diversity_maintenance=config.diversity_maintenance,
            convergence_threshold=config.convergence_threshold,
            convergence_window=config.convergence_window,
        )
        logger.info(f"Starting evolution run {run.id} for '{run.target}' with strategy {run.strategy.value}, "
                    f"population {run.population_size}, max generations {run.max_generations}")

        rng = random.Random(config.random_seed)
        self._strategies[run.id] = strategy
        self._rngs[run.id] = rng
        try:
            genomes = [split_blocks(seed.source_text) for seed in seeds]
            offspring = strategy.seed(genomes, run.population_size, run, rng)
            population = [self._seed_individual(run, child, seeds) for child in offspring]
            await self._evaluate(population, strategy)

            fitnesses = [ind.fitness_score for ind in population]
            run.baseline_fitness = sum(fitnesses) / len(fitnesses)
            run.best_fitness_achieved = max(fitnesses)
            run.fitness_history = [run.best_fitness_achieved]
            self._populations[run.id] = population
            self._lineage[run.id] = list(population)
            run.status = RunStatus.RUNNING
            run.updated_at = utc_now()
            await self._persist(run, population)
        except Exception as e:
            logger.error(f"Evolution run {run.id} failed during bootstrap: {e}", exc_info=True)
            run.status = RunStatus.FAILED
            run.error_message = f"{type(e).__name__}: {e}"
            run.updated_at = utc_now()
            return run

        logger.info(f"Run {run.id} bootstrapped. Baseline fitness: {run.baseline_fitness:.4f}, best: {run.best_fitness_achieved:.4f}")
        return run

    async def advance_generation(self, run: EvolutionRun) -> EvolutionRun:
        if run.status != RunStatus.RUNNING:
            raise EvolutionStateError(f"Run {run.id} is {run.status.value}; only running runs can advance")
        if run.current_generation >= run.max_generations:
            raise EvolutionStateError(f"Run {run.id} already reached max_generations ({run.max_generations})")

        strategy = self._strategies[run.id]
        rng = self._rngs[run.id]
        population = self._populations[run.id]
        next_generation = run.current_generation + 1
        logger.info(f"--- Run {run.id}: generation {next_generation}/{run.max_generations} ---")

        try:
            await self._evaluate(population, strategy)

            elite_count = min(math.floor(run.elitism_fraction * run.population_size), len(population))
            elites = self.selection_controller.select_elites(population, elite_count)
            offspring_count = run.population_size - len(elites)

            new_individuals: List[Individual] = []
            if offspring_count > 0:
                parents = strategy.select(population, offspring_count, run, rng)
                gene_pool = self._gene_pool(population)
                children = strategy.vary(parents, offspring_count, run, rng, gene_pool)
                if run.diversity_maintenance:
                    children = self._maintain_diversity(children, elites, rng, gene_pool)
                parents_by_id = {p.id: p for p in parents}
                new_individuals = [self._offspring_individual(run, child, next_generation, parents_by_id) for child in children]
                await self._evaluate(new_individuals, strategy)

            run.current_generation = next_generation
            if new_individuals:
                best_offspring = max(ind.fitness_score for ind in new_individuals)
                run.best_fitness_achieved = max(run.best_fitness_achieved, best_offspring)
            run.fitness_history.append(run.best_fitness_achieved)
            run.updated_at = utc_now()

            self._populations[run.id] = elites + new_individuals
            self._lineage[run.id].extend(new_individuals)
            await self._persist(run, new_individuals)
        except Exception as e:
            logger.error(f"Run {run.id} failed in generation {next_generation}: {e}", exc_info=True)
            run.status = RunStatus.FAILED
            run.error_message = f"{type(e).__name__}: {e}"
            run.updated_at = utc_now()
            raise

        logger.info(f"Run {run.id} generation {run.current_generation}: {len(elites)} elites, "
                    f"{len(new_individuals)} offspring, best fitness {run.best_fitness_achieved:.4f}")
        return run

    def check_convergence(self, run: EvolutionRun) -> bool:
        if run.status != RunStatus.RUNNING:
            return run.status == RunStatus.COMPLETED

        reason = None
        window = run.convergence_window
        history = run.fitness_history
        if run.best_fitness_achieved >= run.fitness_threshold:
            reason = "fitness_threshold"
        elif run.current_generation >= run.max_generations:
            reason = "max_generations"
        elif len(history) > window and history[-1] - history[-1 - window] < run.convergence_threshold:
            reason = "plateau"

        if reason is None:
            return False

        run.status = RunStatus.COMPLETED
        run.convergence_reason = reason
        run.degraded = run.best_fitness_achieved < run.fitness_threshold
        run.updated_at = utc_now()
        if run.degraded:
            logger.warning(f"Run {run.id} converged ({reason}) below the fitness threshold: "
                           f"{run.best_fitness_achieved:.4f} < {run.fitness_threshold}")
        else:
            logger.info(f"Run {run.id} converged ({reason}) with best fitness {run.best_fitness_achieved:.4f}")
        return True

    def cancel(self, run: EvolutionRun) -> EvolutionRun:
        if run.status in (RunStatus.PENDING, RunStatus.RUNNING):
            run.status = RunStatus.CANCELLED
            run.updated_at = utc_now()
            logger.info(f"Run {run.id} cancelled at generation {run.current_generation}")
        else:
            logger.warning(f"Cancel requested for run {run.id}, which is already {run.status.value}")
        return run

    async def run(self, config: EvolutionConfig, seeds: List[Candidate]) -> EvolutionRun:
        run = await self.start(config, seeds)
        return await self.run_to_convergence(run)

    async def run_to_convergence(self, run: EvolutionRun) -> EvolutionRun:
        """Advances a started run until it converges, then persists its final state."""
        while run.status == RunStatus.RUNNING:
            if self.check_convergence(run):
                break
            await self.advance_generation(run)
        await self._persist(run, [])
        return run

    def best_individuals(self, run: EvolutionRun, limit: int = 5) -> List[Individual]:
        ranked = sorted(
            self._lineage.get(run.id, []),
            key=lambda ind: (ind.fitness_score or 0.0, ind.generation_born),
            reverse=True,
        )
        return ranked[:limit]

    def population(self, run: EvolutionRun) -> List[Individual]:
        return list(self._populations.get(run.id, []))

    def lineage(self, run: EvolutionRun) -> List[Individual]:
        return list(self._lineage.get(run.id, []))

    async def execute(self, config: EvolutionConfig, seeds: List[Candidate]) -> EvolutionRun:
        return await self.run(config, seeds)

    # --- internals ---

    async def _evaluate(self, individuals: List[Individual], strategy: EvolutionStrategy) -> None:
        pending = [ind for ind in individuals if ind.fitness_score is None]
        if pending:
            logger.debug(f"Scoring {len(pending)} individual(s) concurrently")
            await asyncio.gather(*(self._score_individual(ind, strategy) for ind in pending))

    async def _score_individual(self, individual: Individual, strategy: EvolutionStrategy) -> None:
        try:
            scored = await self.scorer.evaluate_candidate(individual.to_candidate())
            individual.evaluation_vector = scored.evaluation_vector
            individual.fitness_score = strategy.fitness(scored.evaluation_vector)
        except Exception as e:
            logger.warning(f"Fitness evaluation failed for individual {individual.id}, scoring 0: {e}")
            individual.fitness_score = 0.0

    def _seed_individual(self, run: EvolutionRun, child: Offspring, seeds: List[Candidate]) -> Individual:
        seed = seeds[child.metadata.get("seed_index", 0)]
        metadata = dict(child.metadata)
        metadata["strategy"] = seed.strategy
        return Individual(
            id=new_id("ind"),
            evolution_run_id=run.id,
            genome=child.genome,
            generation_born=0,
            parent_ids=[seed.id],
            metadata=metadata,
        )

    def _offspring_individual(self, run: EvolutionRun, child: Offspring, generation: int,
                              parents_by_id: Dict[str, Individual]) -> Individual:
        metadata = dict(child.metadata)
        first_parent = parents_by_id.get(child.parent_ids[0]) if child.parent_ids else None
        if first_parent is not None:
            metadata.setdefault("strategy", first_parent.metadata.get("strategy"))
        return Individual(
            id=new_id("ind"),
            evolution_run_id=run.id,
            genome=child.genome,
            generation_born=generation,
            parent_ids=list(child.parent_ids),
            metadata=metadata,
        )

    def _gene_pool(self, population: List[Individual]) -> List[str]:
        seen = set()
        pool = []
        for individual in population:
            for block in individual.genome:
                if block not in seen:
                    seen.add(block)
                    pool.append(block)
        return pool

    def _maintain_diversity(self, children: List[Offspring], elites: List[Individual], rng,
                            gene_pool: List[str]) -> List[Offspring]:
        accepted = [GENOME_BLOCK_SEPARATOR.join(e.genome) for e in elites]
        result = []
        for child in children:
            reseeds = 0
            while reseeds < settings.DIVERSITY_MAX_RESEEDS and self._too_similar(child.genome, accepted, rng):
                reseeds += 1
                child = Offspring(
                    genome=mutate(child.genome, rng, gene_pool),
                    parent_ids=child.parent_ids,
                    metadata={**child.metadata, "reseeded": reseeds},
                )
            if reseeds:
                logger.debug(f"Offspring reseeded {reseeds} time(s) for diversity")
            accepted.append(GENOME_BLOCK_SEPARATOR.join(child.genome))
            result.append(child)
        return result

    def _too_similar(self, genome: List[str], accepted: List[str], rng) -> bool:
        text = GENOME_BLOCK_SEPARATOR.join(genome)
        sample = accepted if len(accepted) <= settings.DIVERSITY_SAMPLE_SIZE else rng.sample(accepted, settings.DIVERSITY_SAMPLE_SIZE)
        threshold = settings.DIVERSITY_SIMILARITY_THRESHOLD
        for other in sample:
            matcher = difflib.SequenceMatcher(None, text, other)
            if matcher.real_quick_ratio() > threshold and matcher.quick_ratio() > threshold and matcher.ratio() > threshold:
                return True
        return False

    async def _persist(self, run: EvolutionRun, individuals: List[Individual]) -> None:
        if self.store is None:
            return
        await self.store.save_evolution_run(run)
        if individuals:
            await self.store.save_individuals(individuals)
