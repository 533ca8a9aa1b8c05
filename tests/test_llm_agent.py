"""Tests for AI reply parsing and the provider failover chain."""

import asyncio
import json
from datetime import datetime
from types import SimpleNamespace

import pytest

from leadflow.config import config
from leadflow.db_models import Intention, LeadTemperature, MessageSender
from leadflow.llm_agent import (
    FALLBACK_APOLOGY,
    AIProviderError,
    AIService,
    GeminiProvider,
    OpenAIProvider,
    SyntheticTransferProvider,
    build_ai_service,
    parse_ai_json,
)
from leadflow.prompts import ConversationContext

from conftest import RecordingSleep, ScriptedProvider

REPLY = {
    "message": "Prazer, Carlos! Qual o modelo do seu carro?",
    "action": "none",
    "extractedData": {"customerName": "Carlos", "vehicle": None, "intention": "vender"},
    "leadTemperature": "warm",
    "confidence": 0.85,
}


def _context():
    return ConversationContext(
        phone="5511999999999",
        now=datetime(2026, 10, 19, 10, 0),
        is_working_day=True,
        messages=[(MessageSender.CUSTOMER, "Oi, sou o Carlos e quero vender meu carro")],
    )


class FakeOpenAIClient:
    def __init__(self, content):
        self.content = content
        self.calls = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeGeminiClient:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.prompts = []
        self.aio = SimpleNamespace(models=SimpleNamespace(generate_content=self._generate))

    async def _generate(self, model, contents):
        self.prompts.append(contents)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(text=outcome)


def test_parse_ai_json_plain():
    response = parse_ai_json(json.dumps(REPLY))

    assert response.message == REPLY["message"]
    assert response.action == "none"
    assert response.extracted_data.customer_name == "Carlos"
    assert response.extracted_data.vehicle is None
    assert response.extracted_data.intention == Intention.SELL
    assert response.lead_temperature == LeadTemperature.WARM
    assert response.confidence == 0.85


def test_parse_ai_json_strips_markdown_fences():
    text = "```json\n" + json.dumps(REPLY) + "\n```"
    assert parse_ai_json(text).message == REPLY["message"]


def test_parse_ai_json_normalizes_loose_fields():
    response = parse_ai_json(
        json.dumps(
            {
                "message": "",
                "action": "dance",
                "extractedData": {"customerName": "null", "city": "  "},
                "leadTemperature": "lukewarm",
                "confidence": 7,
            }
        )
    )

    assert response.message == "Desculpe, não consegui processar sua mensagem."
    assert response.action == "none"
    assert response.extracted_data.customer_name is None
    assert response.extracted_data.city is None
    assert response.lead_temperature is None
    assert response.confidence == 1.0


@pytest.mark.parametrize("text", [None, "", "   ", "não é json", "[1, 2]"])
def test_parse_ai_json_rejects_garbage(text):
    with pytest.raises(AIProviderError):
        parse_ai_json(text)


def test_openai_provider_requests_json_object():
    client = FakeOpenAIClient(json.dumps(REPLY))
    provider = OpenAIProvider("sk-test", "gpt-4o-mini", "system prompt", client=client)

    response = asyncio.run(provider.generate(_context()))

    assert response.extracted_data.customer_name == "Carlos"
    call = client.calls[0]
    assert call["model"] == "gpt-4o-mini"
    assert call["response_format"] == {"type": "json_object"}
    assert call["messages"][0] == {"role": "system", "content": "system prompt"}
    assert call["messages"][-1] == {"role": "user", "content": "Oi, sou o Carlos e quero vender meu carro"}


def test_gemini_provider_retries_rate_limits():
    client = FakeGeminiClient(RuntimeError("429 RESOURCE_EXHAUSTED"), json.dumps(REPLY))
    sleep = RecordingSleep()
    provider = GeminiProvider("key", "gemini-2.0-flash", "system prompt", client=client, sleep=sleep)

    response = asyncio.run(provider.generate(_context()))

    assert response.message == REPLY["message"]
    assert sleep.calls == [10.0]
    assert "[Cliente]: Oi, sou o Carlos e quero vender meu carro" in client.prompts[0]


def test_gemini_provider_does_not_retry_other_errors():
    client = FakeGeminiClient(RuntimeError("500 internal"))
    sleep = RecordingSleep()
    provider = GeminiProvider("key", "gemini-2.0-flash", "system prompt", client=client, sleep=sleep)

    with pytest.raises(RuntimeError):
        asyncio.run(provider.generate(_context()))
    assert sleep.calls == []


def test_gemini_provider_gives_up_after_max_retries():
    rate_limited = RuntimeError("429 Too Many Requests")
    client = FakeGeminiClient(rate_limited, rate_limited, rate_limited)
    sleep = RecordingSleep()
    provider = GeminiProvider("key", "gemini-2.0-flash", "system prompt", client=client, sleep=sleep)

    with pytest.raises(RuntimeError):
        asyncio.run(provider.generate(_context()))
    assert sleep.calls == [10.0, 20.0]


def test_service_falls_back_to_next_provider():
    primary = ScriptedProvider(AIProviderError("invalid JSON"))
    primary.name = "primary"
    secondary = ScriptedProvider(REPLY)

    response, outcomes = asyncio.run(AIService([primary, secondary]).respond_with_outcomes(_context()))

    assert response.message == REPLY["message"]
    assert [o.provider for o in outcomes] == ["primary", "scripted"]
    assert not outcomes[0].ok and outcomes[1].ok


def test_service_ends_with_synthetic_transfer():
    failing = ScriptedProvider(RuntimeError("timeout"))

    service = AIService([failing])
    response = asyncio.run(service.respond(_context()))

    assert service.provider_names == ["scripted", "synthetic"]
    assert response.message == FALLBACK_APOLOGY
    assert response.action == "transfer"
    assert response.confidence == 0.0


def test_synthetic_provider_is_not_added_twice():
    service = AIService([SyntheticTransferProvider()])
    assert service.provider_names == ["synthetic"]


def test_build_ai_service_orders_providers(monkeypatch):
    monkeypatch.setattr(config, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(config, "GEMINI_API_KEY", "g-test")
    monkeypatch.setattr(config, "AI_PROVIDER", "gemini")

    assert build_ai_service(config).provider_names == ["gemini", "openai", "synthetic"]

    monkeypatch.setattr(config, "AI_PROVIDER", "openai")
    assert build_ai_service(config).provider_names == ["openai", "gemini", "synthetic"]


def test_build_ai_service_without_keys_only_transfers():
    assert build_ai_service(config).provider_names == ["synthetic"]
