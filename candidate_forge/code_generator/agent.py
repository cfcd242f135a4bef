# Code Generator Agent
import asyncio
import logging
from typing import Optional, Dict, Any, List

from candidate_forge.core.interfaces import CodeSynthesizerInterface, Specification, Pattern, Candidate, new_id
from candidate_forge.core.errors import TransientExternalError, ValidationError
from candidate_forge.core.llm_client import OllamaClient, clean_llm_output
from candidate_forge.prompt_designer.agent import PromptDesignerAgent
from candidate_forge.config import settings

logger = logging.getLogger(__name__)


class CodeGeneratorAgent(CodeSynthesizerInterface):
    def __init__(self, llm_client: Optional[OllamaClient] = None,
                 prompt_designer: Optional[PromptDesignerAgent] = None,
                 config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.model_name = self.config.get("model_name", settings.get_llm_model("synthesis"))
        self.llm_client = llm_client or OllamaClient(model_name=self.model_name)
        self.prompt_designer = prompt_designer or PromptDesignerAgent()
        self.strategy_temperature = self.config.get("strategy_temperature", 0.8)  # Higher temp for diversity
        self.final_temperature = self.config.get("final_temperature", 0.2)
        logger.info(f"CodeGeneratorAgent initialized with model: {self.model_name}")

    async def generate_strategies(self, spec: Specification, patterns: List[Pattern], count: int) -> List[Candidate]:
        if count < 1:
            raise ValidationError(f"Strategy count must be at least 1, got {count}")
        strategy_names = [settings.GENERATION_STRATEGIES[i % len(settings.GENERATION_STRATEGIES)] for i in range(count)]
        logger.info(f"Generating {count} candidate strategies: {strategy_names}")

        results = await asyncio.gather(
            *(self._generate_one(spec, patterns, name) for name in strategy_names),
            return_exceptions=True,
        )

        candidates = []
        for name, result in zip(strategy_names, results):
            if isinstance(result, Exception):
                logger.error(f"Strategy '{name}' failed: {result}", exc_info=result)
            elif not result:
                logger.warning(f"Strategy '{name}' returned empty code. Discarding.")
            else:
                candidates.append(Candidate(id=new_id("cand"), source_text=result, strategy=name))

        if not candidates:
            raise TransientExternalError(f"None of the {count} generation strategies produced code")
        logger.info(f"Generated {len(candidates)}/{count} candidates.")
        return candidates

    async def _generate_one(self, spec: Specification, patterns: List[Pattern], strategy_name: str) -> str:
        prompt = self.prompt_designer.design_strategy_prompt(spec, patterns, strategy_name)
        raw = await self.llm_client.generate(prompt, temperature=self.strategy_temperature)
        code = clean_llm_output(raw)
        logger.debug(f"Cleaned code for '{strategy_name}':--CLEANED CODE START--{code}--CLEANED CODE END--")
        return code

    async def generate_final_code(self, selected: Candidate, mode: str = "development") -> str:
        prompt = self.prompt_designer.design_final_code_prompt(selected, mode)
        raw = await self.llm_client.generate(prompt, temperature=self.final_temperature)
        code = clean_llm_output(raw)
        if not code:
            raise TransientExternalError(f"Final code generation for candidate {selected.id} returned empty output")
        logger.info(f"Final code generated for candidate {selected.id} ({len(code)} characters)")
        return code

    async def execute(self, spec: Specification, patterns: Optional[List[Pattern]] = None,
                      count: int = settings.STRATEGY_COUNT) -> List[Candidate]:
        return await self.generate_strategies(spec, patterns or [], count)
