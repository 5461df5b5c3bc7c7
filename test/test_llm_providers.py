import json

import httpx
import pytest

from llm.llm_client import LLMClient
from llm.providers.ollama_provider import OllamaProvider
from llm.providers.openai_provider import OpenAIProvider
from schedule_ai.errors import CollaboratorError


def _transport(seen, reply, status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status, json=reply)
    return httpx.MockTransport(handler)


def test_openai_provider_request_shape(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("OPENAI_BASE_URL", "http://llm.local/v1/")
    monkeypatch.setenv("OPENAI_MODEL", "small-model")
    seen = []
    reply = {"choices": [{"message": {"content": '{"title": "Gym"}'}}]}
    provider = OpenAIProvider(transport=_transport(seen, reply))

    assert provider.generate(system="sys", user="Gym 7am") == '{"title": "Gym"}'

    request = seen[0]
    assert str(request.url) == "http://llm.local/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "small-model"
    assert body["response_format"] == {"type": "json_object"}
    assert [m["role"] for m in body["messages"]] == ["system", "user"]


def test_openai_provider_requires_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError):
        OpenAIProvider()


def test_ollama_provider_request_shape(monkeypatch):
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://ollama.local:11434")
    seen = []
    provider = OllamaProvider(transport=_transport(seen, {"message": {"content": "{}"}}))

    assert provider.generate(system="sys", user="u") == "{}"
    body = json.loads(seen[0].content)
    assert str(seen[0].url) == "http://ollama.local:11434/api/chat"
    assert body["stream"] is False
    assert body["format"] == "json"


def test_rate_limit_reaches_client_as_collaborator_error(monkeypatch):
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://ollama.local:11434")
    provider = OllamaProvider(transport=_transport([], {"error": "slow down"}, status=429))
    with pytest.raises(CollaboratorError) as exc:
        LLMClient(provider=provider).generate(system="s", user="u")
    assert exc.value.kind == "rate_limited"


def test_unexpected_envelope_is_bad_response(monkeypatch):
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://ollama.local:11434")
    provider = OllamaProvider(transport=_transport([], {"done": True}))
    with pytest.raises(CollaboratorError) as exc:
        LLMClient(provider=provider).generate(system="s", user="u")
    assert exc.value.kind == "bad_response"
