import httpx
import openai
import pytest
from unittest.mock import MagicMock

from expansion.errors import AICallFailed, ConfigError, RateLimitExceeded
from expansion.models import DataQuality
from providers.rationale import OpenAIRationaleProvider, RationaleRequest

API_URL = "https://api.openai.com/v1/chat/completions"


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def provider(settings, client):
    return OpenAIRationaleProvider(settings, client=client)


@pytest.fixture
def request_(make_scored):
    scored = make_scored("stl-t01", 50.1, 9.9, 0.81, name="Town 01",
                         quality={"performance": DataQuality.ESTIMATED})
    return RationaleRequest.from_scored(scored, "gpt-4o-mini", seed=3)


def _completion(text, prompt_tokens=120, completion_tokens=60):
    completion = MagicMock()
    completion.choices = [MagicMock(message=MagicMock(content=text))]
    completion.usage = MagicMock(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return completion


def test_generate_reports_usage_and_cost(provider, client, settings, request_):
    client.chat.completions.create.return_value = _completion("  Strong gap in coverage.  ")

    response = provider.generate(request_)

    assert response.text == "Strong gap in coverage."
    assert response.tokens_used == 180
    assert response.cost == pytest.approx(settings.call_cost(120, 60))
    kwargs = client.chat.completions.create.call_args[1]
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["seed"] == 3
    assert kwargs["max_tokens"] == settings.max_tokens_per_call


def test_empty_text_is_a_failure(provider, client, request_):
    client.chat.completions.create.return_value = _completion("   ")
    with pytest.raises(AICallFailed):
        provider.generate(request_)


def test_upstream_429_maps_to_rate_limit(provider, client, request_):
    response = httpx.Response(429, request=httpx.Request("POST", API_URL))
    client.chat.completions.create.side_effect = openai.RateLimitError(
        "Too many requests", response=response, body=None)
    with pytest.raises(RateLimitExceeded):
        provider.generate(request_)


def test_connection_error_maps_to_failure(provider, client, request_):
    client.chat.completions.create.side_effect = openai.APIConnectionError(
        request=httpx.Request("POST", API_URL))
    with pytest.raises(AICallFailed):
        provider.generate(request_)


def test_max_call_cost_covers_full_completion(provider, settings, request_):
    worst = provider.max_call_cost(request_)
    assert worst >= settings.call_cost(0, settings.max_tokens_per_call)
    assert worst > settings.call_cost(120, 60)


def test_missing_api_key(settings, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigError):
        OpenAIRationaleProvider(settings)


def test_prompt_flags_estimated_inputs(request_):
    prompt = request_.to_prompt()
    assert "near Town 01" in prompt
    assert "Performance: 81% (estimated)" in prompt
    assert "Nearest existing site: 12.5 km" in prompt


def test_cache_inputs_include_model(request_):
    inputs = request_.cache_inputs(precision=4)
    assert inputs["model"] == "gpt-4o-mini"
    assert inputs["lat"] == 50.1
    assert inputs["estimated"] == ["performance"]
