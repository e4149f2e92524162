# eli_ingest/services/llm_client.py
"""LLM client using LiteLLM for schema-constrained JSON generation."""

import json
from typing import Any, Optional

from litellm import acompletion

from eli_ingest.errors import EnrichmentError
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)


class LLMClient:
    """Wrapper around LiteLLM: tries the primary model, then each fallback."""

    def __init__(self, model: Optional[str], fallback_models: Optional[list[str]] = None,
                 timeout: float = 60.0):
        self.model = model
        self.fallback_models = fallback_models or []
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "LLMClient":
        return cls(
            model=settings.LLM_MODEL if settings.insights_enabled else None,
            fallback_models=settings.LLM_FALLBACK_MODELS,
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.model)

    async def generate_json(
        self,
        prompt: str,
        schema: dict,
        system_instruction: str,
        temperature: float = 0.2,
    ) -> dict[str, Any]:
        """Returns the parsed JSON object from the first model that produces one.

        Raises:
            EnrichmentError: not configured, or no model returned valid JSON
        """
        if not self.enabled:
            raise EnrichmentError("LLM not configured")

        messages = [
            {"role": "system", "content": system_instruction},
            {"role": "user", "content": prompt},
        ]
        response_format = {
            "type": "json_schema",
            "json_schema": {"name": "structured_output", "schema": schema},
        }

        last_error: Optional[Exception] = None
        for model in [self.model, *self.fallback_models]:
            try:
                response = await acompletion(
                    model=model,
                    messages=messages,
                    temperature=temperature,
                    top_p=0.8,
                    response_format=response_format,
                    timeout=self.timeout,
                )
                text = response.choices[0].message.content or ""
                parsed = json.loads(text)
            except Exception as e:  # provider errors vary by backend; try the next model
                logger.warning(f"[LLM] {model} failed: {e}")
                last_error = e
                continue
            if isinstance(parsed, dict):
                return parsed
            last_error = EnrichmentError(f"{model} returned non-object JSON")

        raise EnrichmentError(f"No model produced valid JSON: {last_error}")
