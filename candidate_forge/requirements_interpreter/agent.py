# Requirements Interpreter Agent
import json
import logging
from typing import Optional, Dict, Any, List

from candidate_forge.core.interfaces import RequirementsInterpreterInterface, Specification
from candidate_forge.core.errors import ValidationError
from candidate_forge.core.llm_client import OllamaClient, clean_llm_output
from candidate_forge.prompt_designer.agent import PromptDesignerAgent
from candidate_forge.config import settings

logger = logging.getLogger(__name__)


class OllamaRequirementsInterpreter(RequirementsInterpreterInterface):
    """Asks the model for a JSON reading of the requirements and validates its shape."""

    def __init__(self, llm_client: Optional[OllamaClient] = None,
                 prompt_designer: Optional[PromptDesignerAgent] = None,
                 config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.model_name = self.config.get("model_name", settings.get_llm_model("interpreter"))
        self.llm_client = llm_client or OllamaClient(model_name=self.model_name)
        self.prompt_designer = prompt_designer or PromptDesignerAgent()
        logger.info(f"OllamaRequirementsInterpreter initialized with model: {self.model_name}")

    async def parse(self, text: str, language: str = "en") -> Specification:
        if not text or not text.strip():
            raise ValidationError("Requirements text is empty")
        prompt = self.prompt_designer.design_interpretation_prompt(text, language)
        raw = await self.llm_client.generate(prompt, temperature=0.0, response_format="json")
        spec = self.to_specification(clean_llm_output(raw), language)
        logger.info(f"Parsed requirements: {len(spec.entities)} entities, {len(spec.features)} features, "
                    f"confidence {spec.confidence_score:.2f}")
        return spec

    @staticmethod
    def to_specification(raw_json: str, language: str = "en") -> Specification:
        try:
            data = json.loads(raw_json)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Interpreter returned malformed JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"Interpreter returned {type(data).__name__}, expected a JSON object")

        def string_list(key: str) -> List[str]:
            value = data.get(key, [])
            if not isinstance(value, list):
                raise ValidationError(f"'{key}' must be a list, got {type(value).__name__}")
            return [str(item).strip() for item in value if str(item).strip()]

        try:
            confidence = float(data.get("confidence_score", 0.0))
        except (TypeError, ValueError):
            raise ValidationError(f"'confidence_score' must be a number, got {data.get('confidence_score')!r}") from None

        domain = data.get("domain")
        return Specification(
            entities=string_list("entities"),
            features=string_list("features"),
            constraints=string_list("constraints"),
            confidence_score=min(1.0, max(0.0, confidence)),
            domain=str(domain) if domain else None,
            language=language,
            raw=data,
        )

    async def execute(self, text: str, language: str = "en") -> Specification:
        return await self.parse(text, language)
