# Prompt Designer Agent
from typing import Optional, Dict, Any, List
import logging

from candidate_forge.core.interfaces import BaseAgent, Specification, Pattern, Candidate

logger = logging.getLogger(__name__)

STRATEGY_GUIDANCE = {
    "template": "Follow a conventional, well-known module layout for this kind of component: "
                "a small number of classes with clear responsibilities and plain helper functions.",
    "pattern_based": "Reuse the structure of the reference patterns below where they fit the requirements. "
                     "Adapt names and behaviour to this specification rather than copying them verbatim.",
    "example_driven": "Start from concrete usage: include docstrings with `>>>` examples for every public "
                      "function and a `test_` function per feature.",
    "hybrid": "Combine a conventional layout with the reference patterns below, and document every public API.",
    "ai_assisted": "Use your own judgement for the best design. Favour readability, explicit error handling "
                   "and extension points (abstract base classes) over cleverness.",
}


class PromptDesignerAgent(BaseAgent):
    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        logger.info("PromptDesignerAgent initialized.")

    def _format_specification(self, spec: Specification) -> str:
        parts = []
        if spec.domain:
            parts.append(f"Domain: {spec.domain}")
        parts.append("Entities: " + (", ".join(spec.entities) if spec.entities else "none stated"))
        if spec.features:
            parts.append("Features:\n" + "\n".join(f"  - {f}" for f in spec.features))
        if spec.constraints:
            parts.append("Constraints:\n" + "\n".join(f"  - {c}" for c in spec.constraints))
        return "\n".join(parts)

    def _format_patterns(self, patterns: List[Pattern]) -> str:
        if not patterns:
            return "No reference patterns are available for this specification."
        formatted = []
        for i, pattern in enumerate(patterns):
            formatted.append(
                f"Pattern {i+1}: {pattern.name} (score {pattern.score:.1f})\n"
                f"```python\n{pattern.source_text}\n```"
            )
        return "\n\n".join(formatted)

    def design_strategy_prompt(self, spec: Specification, patterns: List[Pattern], strategy_type: str) -> str:
        logger.info(f"Designing '{strategy_type}' strategy prompt")
        guidance = STRATEGY_GUIDANCE.get(strategy_type, STRATEGY_GUIDANCE["ai_assisted"])
        prompt = (
            f"You are an expert Python programmer. Write a complete Python module that implements the specification below.\n\n"
            f"Specification:\n{self._format_specification(spec)}\n\n"
            f"Approach: {guidance}\n\n"
            f"Reference Patterns:\n{self._format_patterns(patterns)}\n\n"
            f"Quality Expectations:\n"
            f"- The module must be valid Python that parses without errors.\n"
            f"- Use the entity names from the specification for classes and functions.\n"
            f"- Document the module and every public class and function.\n"
            f"- Raise descriptive exceptions for invalid input.\n"
            f"- Include `test_` functions that exercise the main features.\n\n"
            f"Your Response Format:\n"
            f"Please provide *only* the complete Python code. "
            f"Do not include any surrounding text, explanations, or markdown code fences (like ```python or ```)."
        )
        logger.debug(f"Designed strategy prompt:\n--PROMPT START--\n{prompt}\n--PROMPT END--")
        return prompt

    def design_final_code_prompt(self, candidate: Candidate, mode: str = "development") -> str:
        logger.info(f"Designing final code prompt for candidate {candidate.id} (mode: {mode})")
        if mode == "production":
            mode_instructions = ("Prepare the code for production: keep behaviour identical, remove debugging output, "
                                 "tighten error messages and make sure every public API is documented.")
        else:
            mode_instructions = ("Keep the code readable for further development: keep behaviour identical, "
                                 "fix obvious defects and keep the tests.")

        scores = candidate.evaluation_vector.as_dict() if candidate.evaluation_vector else {}
        weak_dimensions = [name for name, value in scores.items() if value < 60]
        feedback = (f"Weak quality dimensions to address: {', '.join(weak_dimensions)}."
                    if weak_dimensions else "No weak quality dimensions were reported.")

        prompt = (
            f"You are an expert Python programmer. Finalize the selected candidate below.\n\n"
            f"Selected Candidate (strategy: {candidate.strategy or 'unknown'}):\n"
            f"```python\n{candidate.source_text}\n```\n\n"
            f"Evaluation Feedback: {feedback}\n\n"
            f"Instructions: {mode_instructions}\n\n"
            f"Your Response Format:\n"
            f"Please provide *only* the complete final Python code. "
            f"Do not include any surrounding text, explanations, or markdown code fences (like ```python or ```)."
        )
        logger.debug(f"Designed final code prompt:\n--PROMPT START--\n{prompt}\n--PROMPT END--")
        return prompt

    def design_interpretation_prompt(self, requirements_text: str, language: str = "en") -> str:
        logger.info(f"Designing requirements interpretation prompt (language: {language})")
        prompt = (
            f"You are a software analyst. Read the requirements below (written in language '{language}') "
            f"and describe them as a JSON object.\n\n"
            f"Requirements:\n{requirements_text}\n\n"
            f"Your Response Format:\n"
            f"Respond with a single JSON object with exactly these keys:\n"
            f'  "entities": list of strings, the main domain nouns (for example "Order", "Customer"),\n'
            f'  "features": list of strings, one per required capability,\n'
            f'  "constraints": list of strings, non-functional or business constraints,\n'
            f'  "domain": string, a short name for the business domain,\n'
            f'  "confidence_score": number between 0 and 1, how confident you are in this reading.\n'
            f"Do not include any other text."
        )
        logger.debug(f"Designed interpretation prompt:\n--PROMPT START--\n{prompt}\n--PROMPT END--")
        return prompt

    async def execute(self, *args, **kwargs) -> Any:
        raise NotImplementedError("PromptDesignerAgent.execute() is not the primary way to use this agent. Call specific design methods.")
