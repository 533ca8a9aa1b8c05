"""
AI reply generation for the conversation funnel.

Providers are tried in order (primary, fallback); each attempt is recorded as
a ProviderOutcome. The last provider is always the synthetic transfer reply,
which cannot fail, so a turn always gets an answer.
"""

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from pydantic import ValidationError

from leadflow.logging_config import get_logger
from leadflow.models import AIResponse
from leadflow.prompts import ConversationContext, build_message_history, build_system_prompt

logger = get_logger(__name__)

FALLBACK_APOLOGY = (
    "Desculpe, estou com uma dificuldade técnica no momento. Vou transferir para um atendente humano."
)
EMPTY_MESSAGE = "Desculpe, não consegui processar sua mensagem."

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


class AIProviderError(Exception):
    """A provider returned nothing usable."""


@dataclass
class ProviderOutcome:
    provider: str
    response: Optional[AIResponse] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.response is not None


def parse_ai_json(text: Optional[str]) -> AIResponse:
    """Parse a provider's JSON reply, tolerating markdown code fences."""
    if not text or not text.strip():
        raise AIProviderError("empty response")

    cleaned = _FENCE_RE.sub("", text).strip()
    try:
        payload = json.loads(cleaned)
    except ValueError as e:
        raise AIProviderError(f"invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise AIProviderError("response is not a JSON object")

    if not payload.get("message"):
        payload["message"] = EMPTY_MESSAGE
    try:
        return AIResponse.model_validate(payload)
    except ValidationError as e:
        raise AIProviderError(f"invalid response shape: {e}") from e


class AIProvider:
    name = "base"

    async def generate(self, context: ConversationContext) -> AIResponse:
        raise NotImplementedError


class OpenAIProvider(AIProvider):
    """Chat Completions with the JSON object response format."""

    name = "openai"

    def __init__(self, api_key: str, model: str, system_prompt: str, client: Any = None):
        self.api_key = api_key
        self.model = model
        self.system_prompt = system_prompt
        self._client = client

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def generate(self, context: ConversationContext) -> AIResponse:
        messages = [{"role": "system", "content": self.system_prompt}] + build_message_history(context)
        response = await self._get_client().chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=0.7,
            max_tokens=500,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content if response.choices else None
        logger.debug("openai_raw_response", content=content)
        return parse_ai_json(content)


class GeminiProvider(AIProvider):
    """Gemini through google-genai, retrying rate-limit errors."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        system_prompt: str,
        client: Any = None,
        max_retries: int = 3,
        retry_wait_seconds: float = 10.0,
        sleep=asyncio.sleep,
    ):
        self.api_key = api_key
        self.model = model
        self.system_prompt = system_prompt
        self._client = client
        self.max_retries = max_retries
        self.retry_wait_seconds = retry_wait_seconds
        self._sleep = sleep

    def _get_client(self):
        if self._client is None:
            from google import genai

            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def build_prompt(self, context: ConversationContext) -> str:
        parts = [self.system_prompt, ""]
        labels = {"system": "[Sistema]", "user": "[Cliente]", "assistant": "[Assistente]"}
        for message in build_message_history(context):
            parts.append(f"{labels[message['role']]}: {message['content']}")
        parts.append("")
        parts.append("Responda APENAS com o JSON no formato especificado:")
        return "\n".join(parts)

    @staticmethod
    def _is_rate_limited(error: Exception) -> bool:
        text = str(error).lower()
        return "429" in text or "resource exhausted" in text or "resource_exhausted" in text

    async def generate(self, context: ConversationContext) -> AIResponse:
        prompt = self.build_prompt(context)
        client = self._get_client()

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await client.aio.models.generate_content(model=self.model, contents=prompt)
            except Exception as e:
                if self._is_rate_limited(e) and attempt < self.max_retries:
                    wait = self.retry_wait_seconds * attempt
                    logger.warning("gemini_rate_limited", attempt=attempt, max_retries=self.max_retries, wait_seconds=wait)
                    await self._sleep(wait)
                    continue
                raise
            text = getattr(response, "text", None)
            logger.debug("gemini_raw_response", text=text)
            return parse_ai_json(text)

        raise AIProviderError("max retries exhausted")


class SyntheticTransferProvider(AIProvider):
    """Apologize and hand the conversation to a human. Never fails."""

    name = "synthetic"

    async def generate(self, context: ConversationContext) -> AIResponse:
        return AIResponse(message=FALLBACK_APOLOGY, action="transfer", confidence=0.0)


class AIService:
    """Ordered provider chain that stops at the first success."""

    def __init__(self, providers: List[AIProvider]):
        providers = list(providers)
        if not providers or not isinstance(providers[-1], SyntheticTransferProvider):
            providers.append(SyntheticTransferProvider())
        self.providers = providers

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self.providers]

    async def respond_with_outcomes(self, context: ConversationContext) -> Tuple[AIResponse, List[ProviderOutcome]]:
        outcomes: List[ProviderOutcome] = []
        for provider in self.providers:
            try:
                response = await provider.generate(context)
            except Exception as e:
                logger.error("ai_provider_failed", provider=provider.name, phone=context.phone, error=str(e))
                outcomes.append(ProviderOutcome(provider=provider.name, error=str(e)))
                continue

            outcomes.append(ProviderOutcome(provider=provider.name, response=response))
            if len(outcomes) > 1:
                logger.info("ai_fallback_used", provider=provider.name, failed=[o.provider for o in outcomes[:-1]])
            return response, outcomes

        # Unreachable while the synthetic provider closes the chain.
        raise AIProviderError("no AI provider produced a response")

    async def respond(self, context: ConversationContext) -> AIResponse:
        response, _ = await self.respond_with_outcomes(context)
        return response


def build_ai_service(cfg) -> AIService:
    """
    Primary provider per AI_PROVIDER, the other one as fallback; a provider is
    included only when its API key is set.
    """
    system_prompt = build_system_prompt(cfg.BOT_NAME, cfg.AI_BRAND_NAME, cfg.PROMPT_STYLE)

    available = {}
    if cfg.OPENAI_API_KEY:
        available["openai"] = OpenAIProvider(cfg.OPENAI_API_KEY, cfg.OPENAI_MODEL, system_prompt)
    if cfg.GEMINI_API_KEY:
        available["gemini"] = GeminiProvider(cfg.GEMINI_API_KEY, cfg.GEMINI_MODEL, system_prompt)

    order = ["gemini", "openai"] if cfg.AI_PROVIDER == "gemini" else ["openai", "gemini"]
    providers = [available[name] for name in order if name in available]
    if not providers:
        logger.warning("no_ai_provider_configured")

    service = AIService(providers)
    logger.info("ai_service_configured", providers=service.provider_names)
    return service
