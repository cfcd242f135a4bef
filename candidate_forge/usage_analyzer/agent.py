# Usage Analyzer Agent
import logging
from typing import Optional, Dict, Any, List

from candidate_forge.core.interfaces import (
    PatternAnalyzerInterface,
    ProjectStoreInterface,
    ProjectStatus,
    Specification,
    Pattern,
)

logger = logging.getLogger(__name__)


class PatternAnalyzerAgent(PatternAnalyzerInterface):
    """Derives reusable patterns from finished projects whose specifications overlap the new one."""

    def __init__(self, store: ProjectStoreInterface, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.store = store
        self.max_patterns = self.config.get("max_patterns", 3)
        logger.info(f"PatternAnalyzerAgent initialized (max_patterns: {self.max_patterns})")

    async def analyze_for_generation(self, spec: Specification) -> List[Pattern]:
        wanted = _terms(spec)
        if not wanted:
            logger.info("Specification has no entities or features; no patterns to look up.")
            return []

        finished = []
        for status in (ProjectStatus.COMPLETED, ProjectStatus.DEPLOYED):
            finished.extend(await self.store.list_projects(status))

        scored = []
        for project in finished:
            if not project.result or project.specification is None:
                continue
            shared = sorted(wanted & _terms(project.specification))
            if shared:
                scored.append((len(shared), project.quality_score or 0.0, project, shared))

        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        patterns = [
            Pattern(name=project.name, source_text=project.result, score=quality, features=shared)
            for _, quality, project, shared in scored[:self.max_patterns]
        ]
        logger.info(f"Found {len(patterns)} pattern(s) among {len(finished)} finished project(s)")
        return patterns

    async def execute(self, spec: Specification) -> List[Pattern]:
        return await self.analyze_for_generation(spec)


def _terms(spec: Specification) -> set:
    return {term.strip().lower() for term in spec.entities + spec.features if term.strip()}
