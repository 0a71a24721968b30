# /chatflow/services/ai_service.py

import logging
from typing import Optional
from openai import AsyncOpenAI

from chatflow.config.settings import settings
from chatflow.utils.circuit_breaker import CircuitBreaker
from chatflow.utils.metrics import external_calls_counter

# Backs the `ai_response` node: one completion per node visit, built from the
# node's interpolated context and the customer's latest input.

logger = logging.getLogger(__name__)

AI_SYSTEM_PROMPT = (
    "You are a customer support assistant replying inside a chat conversation. "
    "Answer in the customer's language, in at most three short sentences."
)


class AIServiceError(Exception):
    """The model could not produce a reply."""


class AIService:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.model = model or settings.openai_model
        self.openai_client = AsyncOpenAI(api_key=api_key) if api_key else None
        self.openai_breaker = CircuitBreaker("openai")

    @property
    def enabled(self) -> bool:
        return self.openai_client is not None

    async def generate_reply(self, message: str, context: str = "") -> str:
        """Returns the model's reply text; raises AIServiceError on any failure."""
        if not self.openai_client:
            raise AIServiceError("No AI client configured")
        try:
            reply = await self.openai_breaker.call(self._generate_openai_response, message, context)
        except Exception as e:
            logger.error(f"OpenAI reply generation failed: {e}")
            external_calls_counter.labels(target="openai", status="error").inc()
            raise AIServiceError(str(e)) from e

        external_calls_counter.labels(target="openai", status="success").inc()
        return reply

    async def _generate_openai_response(self, message: str, context: str) -> str:
        messages = [{"role": "system", "content": AI_SYSTEM_PROMPT}]
        if context:
            messages.append({"role": "system", "content": f"Context: {context}"})
        messages.append({"role": "user", "content": message or ""})

        response = await self.openai_client.chat.completions.create(
            model=self.model, messages=messages, max_tokens=300, temperature=0.4
        )
        content = response.choices[0].message.content
        if not content:
            raise AIServiceError("Empty completion")
        return content.strip()


# Globally accessible instance
ai_service = AIService(settings.openai_api_key)
