import asyncio
import logging
from http import HTTPStatus
from typing import Optional, Dict, Any

import aiohttp  # Async HTTP client for calling Ollama

from candidate_forge.config import settings
from candidate_forge.core.errors import TransientExternalError, ValidationError

logger = logging.getLogger(__name__)


class OllamaClient:
    """Thin wrapper around Ollama's /api/generate endpoint with retry and backoff."""

    def __init__(self, host: Optional[str] = None, model_name: Optional[str] = None,
                 max_retries: Optional[int] = None, retry_delay_seconds: Optional[float] = None,
                 timeout_seconds: Optional[float] = None):
        host = host or settings.OLLAMA_HOST
        if not host:
            raise ValidationError("OLLAMA_HOST not found in settings. Please set it in your .env file or config.")
        self.host = host.rstrip('/')
        self.model_name = model_name or settings.OLLAMA_MODEL_NAME
        self.max_retries = max_retries if max_retries is not None else settings.API_MAX_RETRIES
        self.retry_delay_seconds = retry_delay_seconds if retry_delay_seconds is not None else settings.API_RETRY_DELAY_SECONDS
        self.timeout_seconds = timeout_seconds or settings.LLM_REQUEST_TIMEOUT_SECONDS
        self.generation_config = {
            "temperature": 0.7,
            "top_p": 0.9,
            "top_k": 40,
        }

    def _headers(self) -> Dict[str, str]:
        if settings.API_KEY:
            return {"Authorization": f"Bearer {settings.API_KEY}"}
        return {}

    async def generate(self, prompt: str, model_name: Optional[str] = None,
                       temperature: Optional[float] = None, response_format: Optional[str] = None) -> str:
        """Returns the raw response text. `response_format="json"` enables Ollama's JSON mode."""
        effective_model_name = model_name or self.model_name
        options = self.generation_config.copy()
        if temperature is not None:
            options["temperature"] = temperature
            logger.debug(f"Using temperature override: {temperature}")

        payload: Dict[str, Any] = {
            "model": effective_model_name,
            "prompt": prompt,
            "stream": False,
            "options": options,
        }
        if response_format:
            payload["format"] = response_format

        delay = self.retry_delay_seconds
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        last_error = "no attempt made"

        async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as session:
            for attempt in range(self.max_retries):
                try:
                    logger.debug(f"API Call Attempt {attempt + 1} of {self.max_retries} to Ollama at {self.host}/api/generate")
                    async with session.post(f"{self.host}/api/generate", json=payload) as response:
                        if response.status == HTTPStatus.OK:
                            result = await response.json()
                            generated_text = result.get("response", "").strip()
                            logger.debug(f"Raw response from Ollama:--RESPONSE START--{generated_text}--RESPONSE END--")
                            return generated_text
                        last_error = await response.text()
                        logger.warning(f"Ollama returned status {response.status}: {last_error}")
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    last_error = str(e) or type(e).__name__
                    logger.warning(f"Network error during Ollama call: {last_error}")

                if attempt < self.max_retries - 1:
                    logger.info(f"Retrying in {delay}s...")
                    await asyncio.sleep(delay)
                    delay *= 2

        logger.error(f"Failed to reach Ollama after {self.max_retries} attempts.")
        raise TransientExternalError(f"Ollama request failed after {self.max_retries} attempts: {last_error}")


def clean_llm_output(raw_code: str) -> str:
    """
    Cleans the raw output from the LLM, typically removing markdown code fences.
    Example: ```python code``` -> code
    """
    code = raw_code.strip()
    if code.startswith("```python") and code.endswith("```"):
        return code[len("```python"): -len("```")].strip()
    elif code.startswith("```") and code.endswith("```"):
        return code[len("```"): -len("```")].strip()
    return code
