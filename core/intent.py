"""
Intent classification — answers "does this message express <intent>?".

The engine only needs a boolean. The LLM classifier asks the configured
provider for a one-word "sim"/"não" (yes/no) verdict; any failure counts
as "no match" so a classifier outage routes to the second branch instead
of failing the invocation.
"""
from __future__ import annotations

import abc
import structlog
from typing import Optional

from config.settings import LLMConfig, get_settings

logger = structlog.get_logger()

_SYSTEM_PROMPT = (
    "Você é um detector de intenção. Analise a mensagem e responda apenas "
    "\"sim\" ou \"não\" se a mensagem indica a intenção \"{intent}\"."
)

_YES_TOKENS = ("sim", "yes")


class IntentClassifier(abc.ABC):

    @abc.abstractmethod
    async def classify(self, message: str, intent: str) -> bool:
        ...


class LLMIntentClassifier(IntentClassifier):
    """
    Yes/no intent detection using Claude or OpenAI.
    Supports both Anthropic and OpenAI LLM providers.
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        self._config = config or get_settings().llm
        self._client = None
        self._provider = self._config.provider or "openai"

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self._config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self._config.api_key)
                logger.info("llm_client_initialized", provider=self._provider,
                            model=self._config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    async def _call_llm(self, system: str, message: str) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        if not client:
            return ""

        if self.is_openai:
            response = await client.chat.completions.create(
                model=self._config.model,
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": message},
                ],
            )
            return response.choices[0].message.content or ""

        response = await client.messages.create(
            model=self._config.model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            system=system,
            messages=[{"role": "user", "content": message}],
        )
        return response.content[0].text

    async def classify(self, message: str, intent: str) -> bool:
        if not message or not intent:
            return False
        try:
            answer = await self._call_llm(_SYSTEM_PROMPT.format(intent=intent), message)
        except Exception as e:
            logger.error("intent_detection_failed", intent=intent, error=str(e))
            return False

        matched = any(token in (answer or "").lower() for token in _YES_TOKENS)
        logger.debug("intent_detected", intent=intent, matched=matched)
        return matched
