# Quality Checkpoint Agent
import logging
import statistics
from typing import List, Dict, Any, Optional, Sequence

from candidate_forge.core.interfaces import (
    QualityCheckpointInterface,
    EvaluationVector,
    CheckpointResult,
    CheckpointStatus,
    CriticalFailure,
    QualityDistribution,
    QualityMetrics,
)
from candidate_forge.config import settings

logger = logging.getLogger(__name__)

MIN_SUCCESS_RATE = 0.8
NEAR_THRESHOLD_FACTOR = 0.9
MIN_DOMAIN_COMPLIANCE = 50.0

# (dimension, floor, hint) applied to candidates below the quality threshold
IMPROVEMENT_RULES = (
    ("documentation_quality", 50.0, "Add comprehensive documentation"),
    ("test_coverage", 60.0, "Increase test coverage"),
    ("performance_score", 70.0, "Optimize performance"),
)


class QualityCheckpointAgent(QualityCheckpointInterface):
    """Aggregates a batch of evaluation vectors into a continue / retry / abort decision.

    Holds no state between calls: the same batch and threshold always yield
    the same result.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.default_threshold = self.config.get("threshold", settings.QUALITY_THRESHOLD)
        logger.info(f"QualityCheckpointAgent initialized with default threshold: {self.default_threshold}")

    def checkpoint(self, vectors: Sequence[EvaluationVector], threshold: Optional[float] = None) -> CheckpointResult:
        threshold = self.default_threshold if threshold is None else threshold
        metrics = self.compute_metrics(vectors)

        if metrics.average_quality >= threshold and metrics.success_rate >= MIN_SUCCESS_RATE:
            status = CheckpointStatus.CONTINUE
        elif not metrics.critical_failures and metrics.average_quality >= NEAR_THRESHOLD_FACTOR * threshold:
            status = CheckpointStatus.CONTINUE
        elif metrics.critical_failures:
            status = CheckpointStatus.ABORT
        else:
            status = CheckpointStatus.RETRY_WITH_IMPROVEMENTS

        result = CheckpointResult(
            status=status,
            metrics=metrics,
            improvements=self.identify_improvements(vectors, threshold),
            recommendations=self.generate_recommendations(metrics),
        )
        logger.info(
            f"Quality checkpoint over {len(vectors)} candidate(s): {status.value} "
            f"(average {metrics.average_quality:.2f}, success rate {metrics.success_rate:.2f}, "
            f"critical failures {len(metrics.critical_failures)})"
        )
        return result

    def compute_metrics(self, vectors: Sequence[EvaluationVector]) -> QualityMetrics:
        if not vectors:
            return QualityMetrics(average_quality=0.0, success_rate=0.0)

        qualities = [v.overall() for v in vectors]
        compiled = sum(1 for v in vectors if v.compilation_success > 0)
        critical = []
        for index, vector in enumerate(vectors):
            reasons = self._critical_reasons(vector)
            if reasons:
                critical.append(CriticalFailure(index=index, reasons=reasons))

        return QualityMetrics(
            average_quality=statistics.fmean(qualities),
            success_rate=compiled / len(vectors),
            critical_failures=critical,
            distribution=QualityDistribution(
                min=min(qualities),
                max=max(qualities),
                median=statistics.median(qualities),
                std_dev=statistics.pstdev(qualities),
            ),
        )

    def _critical_reasons(self, vector: EvaluationVector) -> List[str]:
        reasons = []
        if vector.compilation_success == 0:
            reasons.append("compilation_failed")
        if vector.domain_compliance < MIN_DOMAIN_COMPLIANCE:
            reasons.append("domain_non_compliant")
        return reasons

    def identify_improvements(self, vectors: Sequence[EvaluationVector], threshold: float) -> List[str]:
        improvements: List[str] = []
        for vector in vectors:
            if vector.overall() >= threshold:
                continue
            for dimension, floor, hint in IMPROVEMENT_RULES:
                if getattr(vector, dimension) < floor and hint not in improvements:
                    improvements.append(hint)
        return improvements

    def generate_recommendations(self, metrics: QualityMetrics) -> List[str]:
        recommendations = []
        if metrics.average_quality < 80:
            recommendations.append("Focus on quality improvements")
        if metrics.success_rate < 0.9:
            recommendations.append("Improve compilation success rate")
        if metrics.distribution.std_dev > 20:
            recommendations.append("Reduce quality variance between candidates")
        return recommendations

    async def execute(self, vectors: Sequence[EvaluationVector], threshold: Optional[float] = None) -> CheckpointResult:
        return self.checkpoint(vectors, threshold)
