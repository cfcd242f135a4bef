# Selection Controller Agent
import random
import logging
from dataclasses import dataclass
from typing import List, Dict, Any, Optional

from candidate_forge.core.interfaces import SelectionControllerInterface, Individual, Candidate, EvaluationVector
from candidate_forge.core.errors import ValidationError
from candidate_forge.config import settings

logger = logging.getLogger(__name__)

FITNESS_EPSILON = 0.0001

# Weights of the overall score used to pick the final candidate
OVERALL_SCORE_WEIGHTS = {
    "compilation_success": 0.30,
    "test_coverage": 0.20,
    "documentation_quality": 0.15,
    "performance_score": 0.20,
    "design_quality": 0.15,
}


def overall_score(vector: Optional[EvaluationVector]) -> float:
    if vector is None:
        return 0.0
    return sum(getattr(vector, name) * weight for name, weight in OVERALL_SCORE_WEIGHTS.items())


@dataclass
class SelectionOutcome:
    best: Candidate
    score: float
    degraded: bool  # Best available candidate is still below the threshold


class SelectionControllerAgent(SelectionControllerInterface):
    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.default_pressure = self.config.get("selection_pressure", settings.SELECTION_PRESSURE)
        logger.info(f"SelectionControllerAgent initialized with selection_pressure: {self.default_pressure}")

    def select_parents(self, population: List[Individual], num_parents: int,
                       selection_pressure: Optional[float] = None, rng: Optional[random.Random] = None) -> List[Individual]:
        """Roulette-wheel selection with replacement.

        Each individual's slice of the wheel is ``(fitness + eps) ** selection_pressure``,
        so pressure 0 is uniform sampling and larger values concentrate picks on the
        top performers.
        """
        rng = rng or random
        pressure = self.default_pressure if selection_pressure is None else selection_pressure
        logger.debug(f"Starting parent selection. Population size: {len(population)}, parents: {num_parents}, pressure: {pressure}")
        if not population or num_parents <= 0:
            return []

        if all((p.fitness_score or 0.0) <= 0.0 for p in population):
            logger.warning("All candidates have zero fitness. Selecting parents randomly.")
            return rng.choices(population, k=num_parents)

        weights = [((p.fitness_score or 0.0) + FITNESS_EPSILON) ** pressure for p in population]
        parents = rng.choices(population, weights=weights, k=num_parents)
        logger.debug(f"Selected parents via roulette: {[p.id for p in parents]}")
        return parents

    def select_elites(self, population: List[Individual], count: int) -> List[Individual]:
        if count <= 0:
            return []
        # Newer generations win fitness ties
        ranked = sorted(
            population,
            key=lambda p: (p.fitness_score or 0.0, p.generation_born),
            reverse=True,
        )
        elites = []
        seen_ids = set()
        for individual in ranked:
            if len(elites) >= count:
                break
            if individual.id not in seen_ids:
                elites.append(individual)
                seen_ids.add(individual.id)
        logger.debug(f"Selected {len(elites)} elites: {[p.id for p in elites]}")
        return elites

    def select_optimal(self, candidates: List[Candidate], threshold: Optional[float] = None) -> SelectionOutcome:
        if not candidates:
            raise ValidationError("Cannot select an optimal candidate from an empty list")
        threshold = settings.QUALITY_THRESHOLD if threshold is None else threshold
        best = max(candidates, key=lambda c: overall_score(c.evaluation_vector))
        score = overall_score(best.evaluation_vector)
        degraded = score < threshold
        if degraded:
            logger.warning(f"Best candidate {best.id} scores {score:.2f}, below threshold {threshold}. Marking selection degraded.")
        else:
            logger.info(f"Selected candidate {best.id} with overall score {score:.2f}")
        return SelectionOutcome(best=best, score=score, degraded=degraded)

    async def execute(self, action: str, **kwargs) -> Any:
        if action == "select_parents":
            return self.select_parents(kwargs['population'], kwargs['num_parents'], kwargs.get('selection_pressure'))
        elif action == "select_elites":
            return self.select_elites(kwargs['population'], kwargs['count'])
        elif action == "select_optimal":
            return self.select_optimal(kwargs['candidates'], kwargs.get('threshold'))
        else:
            raise ValueError(f"Unknown action: {action}")
