# Core components, interfaces, data models
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional, Sequence, Tuple

from candidate_forge.config import settings
from candidate_forge.core.errors import ValidationError, StepFailure

DIMENSIONS = (
    "compilation_success",
    "test_coverage",
    "documentation_quality",
    "performance_score",
    "design_quality",
    "domain_compliance",
    "usability_score",
    "maintainability_index",
)

GENOME_BLOCK_SEPARATOR = "\n\n"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class EvolutionStrategyName(str, Enum):
    GENETIC = "genetic"
    DIFFERENTIAL = "differential"
    PARTICLE_SWARM = "particle_swarm"
    SIMULATED_ANNEALING = "simulated_annealing"
    AB_TESTING = "ab_testing"
    HYBRID = "hybrid"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ProjectStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    TESTING = "testing"
    COMPLETED = "completed"
    DEPLOYED = "deployed"
    FAILED = "failed"
    EVOLVING = "evolving"


class CheckpointStatus(str, Enum):
    CONTINUE = "continue"
    RETRY_WITH_IMPROVEMENTS = "retry_with_improvements"
    ABORT = "abort"


@dataclass(frozen=True)
class EvaluationVector:
    """Eight independent quality scores for one candidate, each in [0, 100]."""
    compilation_success: float = 0.0
    test_coverage: float = 0.0
    documentation_quality: float = 0.0
    performance_score: float = 0.0
    design_quality: float = 0.0
    domain_compliance: float = 0.0
    usability_score: float = 0.0
    maintainability_index: float = 0.0

    def __post_init__(self):
        for name in DIMENSIONS:
            value = getattr(self, name)
            if not 0.0 <= value <= 100.0:
                raise ValidationError(f"Score for '{name}' must be within [0, 100], got {value}")

    def as_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in DIMENSIONS}

    def overall(self) -> float:
        return sum(getattr(self, name) for name in DIMENSIONS) / len(DIMENSIONS)


@dataclass(frozen=True)
class Candidate:
    id: str
    source_text: str
    evaluation_vector: Optional[EvaluationVector] = None
    generation: int = 0
    parent_ids: Tuple[str, ...] = ()
    strategy: Optional[str] = None  # Synthesizer strategy that produced it, e.g. "template"
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def with_evaluation(self, vector: EvaluationVector) -> "Candidate":
        return replace(self, evaluation_vector=vector)


@dataclass
class CriticalFailure:
    index: int  # Position of the vector in the evaluated batch
    reasons: List[str] = field(default_factory=list)


@dataclass
class QualityDistribution:
    min: float = 0.0
    max: float = 0.0
    median: float = 0.0
    std_dev: float = 0.0


@dataclass
class QualityMetrics:
    average_quality: float
    success_rate: float
    critical_failures: List[CriticalFailure] = field(default_factory=list)
    distribution: QualityDistribution = field(default_factory=QualityDistribution)


@dataclass
class CheckpointResult:
    status: CheckpointStatus
    metrics: QualityMetrics
    improvements: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass
class Specification:
    entities: List[str] = field(default_factory=list)
    features: List[str] = field(default_factory=list)
    constraints: List[str] = field(default_factory=list)
    confidence_score: float = 0.0
    domain: Optional[str] = None
    language: str = "en"
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Pattern:
    name: str
    source_text: str
    score: float = 0.0
    features: List[str] = field(default_factory=list)


@dataclass
class EvolutionConfig:
    target: str = "candidate"
    strategy: EvolutionStrategyName = field(default_factory=lambda: EvolutionStrategyName(settings.EVOLUTION_STRATEGY))
    population_size: int = settings.POPULATION_SIZE
    max_generations: int = settings.MAX_GENERATIONS
    fitness_threshold: float = settings.FITNESS_THRESHOLD
    mutation_rate: float = settings.MUTATION_RATE
    crossover_rate: float = settings.CROSSOVER_RATE
    selection_pressure: float = settings.SELECTION_PRESSURE
    elitism_fraction: float = settings.ELITISM_FRACTION
    diversity_maintenance: bool = settings.DIVERSITY_MAINTENANCE
    convergence_threshold: float = settings.CONVERGENCE_THRESHOLD
    convergence_window: int = settings.CONVERGENCE_WINDOW
    fitness_weights: Optional[Dict[str, float]] = None  # Overrides the strategy's default fitness mapping
    random_seed: Optional[int] = None


@dataclass
class EvolutionRun:
    id: str
    target: str
    strategy: EvolutionStrategyName
    population_size: int
    max_generations: int
    fitness_threshold: float
    mutation_rate: float
    crossover_rate: float
    selection_pressure: float
    elitism_fraction: float
    diversity_maintenance: bool
    convergence_threshold: float
    convergence_window: int = settings.CONVERGENCE_WINDOW
    current_generation: int = 0
    status: RunStatus = RunStatus.PENDING
    best_fitness_achieved: float = 0.0
    baseline_fitness: float = 0.0
    fitness_history: List[float] = field(default_factory=list)  # Best fitness after each generation, index 0 = seed population
    convergence_reason: Optional[str] = None  # fitness_threshold, max_generations or plateau
    degraded: bool = False  # Completed without reaching fitness_threshold
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def progress_percentage(self) -> float:
        if self.max_generations <= 0:
            return 0.0
        return self.current_generation / self.max_generations * 100

    @property
    def fitness_improvement(self) -> float:
        return self.best_fitness_achieved - self.baseline_fitness


@dataclass
class Individual:
    id: str
    evolution_run_id: str
    genome: List[str]  # Ordered top-level source blocks
    generation_born: int = 0
    fitness_score: Optional[float] = None
    evaluation_vector: Optional[EvaluationVector] = None
    parent_ids: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def source_text(self) -> str:
        blocks = [block.strip("\n") for block in self.genome if block.strip()]
        return GENOME_BLOCK_SEPARATOR.join(blocks) + "\n"

    def to_candidate(self) -> Candidate:
        return Candidate(
            id=self.id,
            source_text=self.source_text,
            evaluation_vector=self.evaluation_vector,
            generation=self.generation_born,
            parent_ids=tuple(self.parent_ids),
            strategy=self.metadata.get("strategy"),
            metadata={"evolution_run_id": self.evolution_run_id, "fitness_score": self.fitness_score},
        )


@dataclass
class Offspring:
    """A genome proposed by an evolution strategy, before it becomes an Individual."""
    genome: List[str]
    parent_ids: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepResult:
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    attempt_count: int = 0
    status: StepStatus = StepStatus.PENDING
    compensated: bool = False


@dataclass
class WorkflowRun:
    id: str
    name: str
    steps: List[StepResult] = field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.PENDING
    result: Any = None
    failure: Optional[StepFailure] = None
    compensation_completed: bool = False
    cancel_requested: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def step(self, name: str) -> Optional[StepResult]:
        return next((step for step in self.steps if step.name == name), None)

    def outputs(self) -> Dict[str, Any]:
        return {step.name: step.output for step in self.steps if step.status == StepStatus.SUCCEEDED}


@dataclass
class StepEvent:
    workflow_id: str
    step: str
    kind: str  # start, success, retry, failure, compensate, compensation_failed
    attempt: int = 0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class Project:
    id: str
    name: str
    requirements: str
    status: ProjectStatus = ProjectStatus.PENDING
    specification: Optional[Specification] = None
    result: Optional[str] = None
    quality_score: Optional[float] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


@dataclass
class GenerationRequestRecord:
    id: str
    project_id: str
    strategy: Optional[str]
    status: str = "pending"  # pending, running, completed, failed
    parameters: Dict[str, Any] = field(default_factory=dict)
    generated_code: Optional[str] = None
    quality_metrics: Dict[str, Any] = field(default_factory=dict)
    execution_time_ms: Optional[float] = None
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class BaseAgent(ABC):
    """Base class for all agents."""
    @abstractmethod
    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}

    @abstractmethod
    async def execute(self, *args, **kwargs) -> Any:
        """Main execution method for an agent."""
        pass


class ScorerInterface(BaseAgent):
    @abstractmethod
    def score(self, candidate: Candidate) -> EvaluationVector:
        pass

    @abstractmethod
    async def evaluate_candidate(self, candidate: Candidate) -> Candidate:
        pass


class QualityCheckpointInterface(BaseAgent):
    @abstractmethod
    def checkpoint(self, vectors: Sequence[EvaluationVector], threshold: float) -> CheckpointResult:
        pass


class SelectionControllerInterface(BaseAgent):
    @abstractmethod
    def select_parents(self, population: List[Individual], num_parents: int, selection_pressure: float, rng=None) -> List[Individual]:
        pass

    @abstractmethod
    def select_elites(self, population: List[Individual], count: int) -> List[Individual]:
        pass


class EvolutionStrategyInterface(ABC):
    """One evolution strategy. The optimizer only relies on seed, select, vary and fitness."""
    name: EvolutionStrategyName

    @abstractmethod
    def seed(self, seeds: List[List[str]], size: int, run: EvolutionRun, rng) -> List[Offspring]:
        pass

    @abstractmethod
    def select(self, population: List[Individual], count: int, run: EvolutionRun, rng) -> List[Individual]:
        pass

    @abstractmethod
    def vary(self, parents: List[Individual], count: int, run: EvolutionRun, rng, gene_pool: List[str]) -> List[Offspring]:
        pass

    @abstractmethod
    def fitness(self, vector: EvaluationVector) -> float:
        pass


class OptimizerInterface(BaseAgent):
    @abstractmethod
    async def start(self, config: EvolutionConfig, seeds: List[Candidate]) -> EvolutionRun:
        pass

    @abstractmethod
    async def advance_generation(self, run: EvolutionRun) -> EvolutionRun:
        pass

    @abstractmethod
    def check_convergence(self, run: EvolutionRun) -> bool:
        pass


class RequirementsInterpreterInterface(BaseAgent):
    @abstractmethod
    async def parse(self, text: str, language: str = "en") -> Specification:
        pass


class CodeSynthesizerInterface(BaseAgent):
    @abstractmethod
    async def generate_strategies(self, spec: Specification, patterns: List[Pattern], count: int) -> List[Candidate]:
        pass

    @abstractmethod
    async def generate_final_code(self, selected: Candidate, mode: str = "development") -> str:
        pass


class PatternAnalyzerInterface(BaseAgent):
    @abstractmethod
    async def analyze_for_generation(self, spec: Specification) -> List[Pattern]:
        pass


class ProjectStoreInterface(BaseAgent):
    @abstractmethod
    async def create_project(self, name: str, requirements: str, metadata: Optional[Dict[str, Any]] = None) -> Project:
        pass

    @abstractmethod
    async def get(self, project_id: str) -> Optional[Project]:
        pass

    @abstractmethod
    async def update(self, project_id: str, fields: Dict[str, Any]) -> Project:
        pass

    @abstractmethod
    async def list_projects(self, status: Optional[ProjectStatus] = None) -> List[Project]:
        pass

    @abstractmethod
    async def save_candidates(self, project_id: str, candidates: List[Candidate]) -> None:
        pass

    @abstractmethod
    async def delete_candidates(self, project_id: str) -> int:
        pass

    @abstractmethod
    async def save_evolution_run(self, run: EvolutionRun) -> None:
        pass

    @abstractmethod
    async def save_individuals(self, individuals: List[Individual]) -> None:
        pass

    @abstractmethod
    async def save_generation_request(self, record: GenerationRequestRecord) -> None:
        pass

    @abstractmethod
    async def update_generation_request(self, request_id: str, fields: Dict[str, Any]) -> GenerationRequestRecord:
        pass

    @abstractmethod
    async def save_workflow_run(self, run: WorkflowRun) -> None:
        pass


class ProgressSinkInterface(BaseAgent):
    @abstractmethod
    async def report(self, event: StepEvent) -> None:
        pass


class TaskManagerInterface(BaseAgent):
    @abstractmethod
    async def generate(self, name: str, requirements_text: str, options: Optional[Dict[str, Any]] = None):
        pass

    @abstractmethod
    async def start_evolution(self, project_id: str, options: Optional[Dict[str, Any]] = None):
        pass
