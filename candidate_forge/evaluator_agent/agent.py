# Evaluator Agent
import ast
import asyncio
import logging
import re
from typing import Optional, Dict, Any, List

from candidate_forge.core.interfaces import ScorerInterface, Candidate, EvaluationVector
from candidate_forge.config import settings

logger = logging.getLogger(__name__)

_DEF_OR_CLASS = re.compile(r"^\s*(?:async\s+def|def|class)\s+(\w+)", re.MULTILINE)
_TEST_FUNCTION = re.compile(r"^\s*(?:async\s+)?def\s+test_\w*", re.MULTILINE)
_DOCSTRING_AFTER_HEADER = re.compile(
    r"^[ \t]*(?:async\s+def|def|class)\s+[^\n]*:[ \t]*\n[ \t]*[rRuU]?(?:\"\"\"|''')", re.MULTILINE
)
_MODULE_DOCSTRING = re.compile(r"^\s*(?:#[^\n]*\n\s*)*[rRuU]?(?:\"\"\"|''')")
_LOOP = re.compile(r"^(?:for|while|async\s+for)\b")
_GENERIC_NAME = re.compile(r"^(?:thing\d*|foo|bar|baz|data|tmp|temp|func\d*|f\d*|x\d*)$", re.IGNORECASE)


class EvaluatorAgent(ScorerInterface):
    """Scores a candidate's source text along eight independent quality dimensions.

    Every dimension is computed by its own probe. A probe that raises scores 0
    and the remaining probes still run. Apart from compilation, probes look for
    textual markers, so unparseable source still gets the other dimensions.
    """

    def __init__(self, domain_markers: Optional[List[str]] = None, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.domain_markers = [m for m in (domain_markers or settings.DOMAIN_MARKERS) if m and m.strip()]
        self._probes = {
            "compilation_success": self._test_compilation,
            "test_coverage": self._assess_test_coverage,
            "documentation_quality": self._assess_documentation,
            "performance_score": self._benchmark_performance,
            "design_quality": self._assess_design_quality,
            "domain_compliance": self._check_domain_compliance,
            "usability_score": self._assess_usability,
        }
        logger.info(f"EvaluatorAgent initialized with {len(self.domain_markers)} domain markers")

    def score(self, candidate: Candidate) -> EvaluationVector:
        source = candidate.source_text or ""
        scores = {name: self._run_probe(name, probe, source) for name, probe in self._probes.items()}
        scores["maintainability_index"] = (
            scores["documentation_quality"] + scores["design_quality"] + scores["test_coverage"]
        ) / 3
        return EvaluationVector(**scores)

    def _run_probe(self, name: str, probe, source: str) -> float:
        try:
            value = float(probe(source))
        except Exception as e:
            logger.warning(f"Probe '{name}' could not determine a score: {e}", exc_info=True)
            return 0.0
        return min(100.0, max(0.0, value))

    async def evaluate_candidate(self, candidate: Candidate) -> Candidate:
        logger.debug(f"Evaluating candidate: {candidate.id}")
        vector = self.score(candidate)
        logger.info(f"Evaluation complete for candidate {candidate.id}. Overall: {vector.overall():.2f}")
        return candidate.with_evaluation(vector)

    async def evaluate_all(self, candidates: List[Candidate]) -> List[Candidate]:
        return list(await asyncio.gather(*(self.evaluate_candidate(c) for c in candidates)))

    async def execute(self, candidate: Candidate) -> Candidate:
        return await self.evaluate_candidate(candidate)

    # --- probes ---

    def _test_compilation(self, source: str) -> float:
        if not source.strip():
            return 0.0
        try:
            ast.parse(source)
        except (SyntaxError, ValueError) as e:
            logger.debug(f"Syntax check failed: {e}")
            return 0.0
        return 100.0

    def _assess_test_coverage(self, source: str) -> float:
        return min(len(_TEST_FUNCTION.findall(source)) * 10, 100)

    def _assess_documentation(self, source: str) -> float:
        score = 0
        if _MODULE_DOCSTRING.match(source):
            score += 30
        score += min(len(_DOCSTRING_AFTER_HEADER.findall(source)) * 10, 40)
        if "Example" in source or ">>>" in source:
            score += 20
        if re.search(r"\)\s*->\s*\S", source):
            score += 10
        return score

    def _benchmark_performance(self, source: str) -> float:
        score = 100
        score -= min(self._count_nested_loops(source) * 10, 40)
        if "time.sleep(" in source:
            score -= 20
        if re.search(r"\b(lru_cache|functools\.cache|@cache)\b", source):
            score = min(score + 10, 100)
        return score

    def _count_nested_loops(self, source: str) -> int:
        nested = 0
        open_loops: List[int] = []  # indentation of loops whose body we are inside
        for line in source.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            indent = len(line) - len(line.lstrip())
            while open_loops and indent <= open_loops[-1]:
                open_loops.pop()
            if _LOOP.match(stripped):
                if open_loops:
                    nested += 1
                open_loops.append(indent)
        return nested

    def _assess_design_quality(self, source: str) -> float:
        score = 0
        class_count = len(re.findall(r"^\s*class\s+\w+", source, re.MULTILINE))
        function_count = len(re.findall(r"^\s*(?:async\s+)?def\s+\w+", source, re.MULTILINE))
        if class_count <= 3:
            score += 25
        if class_count and function_count:
            score += 25
        if re.search(r"\b(ABC|abstractmethod|Protocol)\b", source):
            score += 25
        if re.search(r"class\s+\w+(Error|Exception)\b", source) or re.search(r"raise\s+\w*(Error|Exception)\b", source):
            score += 25
        return score

    def _check_domain_compliance(self, source: str) -> float:
        if not self.domain_markers:
            return 100.0
        lowered = source.lower()
        present = sum(1 for marker in self.domain_markers if marker.lower() in lowered)
        return 100.0 * present / len(self.domain_markers)

    def _assess_usability(self, source: str) -> float:
        score = 0
        names = _DEF_OR_CLASS.findall(source)
        if names and all(len(n.strip("_")) > 2 and not _GENERIC_NAME.match(n.strip("_")) for n in names):
            score += 30
        if re.search(r"def\s+\w+\([^)]*=\s*[^,)\s]+", source):
            score += 20
        if re.search(r"raise\s+\w+\(\s*[fFrR]?[\"']", source):
            score += 25
        if ">>>" in source or "Example" in source or "__main__" in source:
            score += 25
        return score
