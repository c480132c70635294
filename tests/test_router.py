from types import SimpleNamespace

import litellm
import pytest

from aipair.config_loader import MissingAPIKeyError
from aipair.router import GenerationError, ModelRouter, _build_kwargs, model_family, router_factory


def _response(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )


@pytest.fixture(autouse=True)
def _no_cost_lookup(monkeypatch):
    monkeypatch.setattr(litellm, "completion_cost", lambda **kwargs: 0.001)


def test_model_family():
    assert model_family("gpt-4o") == "openai"
    assert model_family("o1-preview") == "openai"
    assert model_family("claude-3-5-sonnet-20241022") == "anthropic"
    assert model_family("anthropic/claude-sonnet-4") == "anthropic"
    assert model_family("gemini-1.5-pro") == "gemini"


def test_o_series_drops_temperature():
    kwargs = _build_kwargs("o1-preview", [], 0.7, 2000, "k")
    assert "temperature" not in kwargs
    assert _build_kwargs("gpt-4o", [], 0.7, 2000, "k")["temperature"] == 0.7


def test_missing_key_for_family(config):
    with pytest.raises(MissingAPIKeyError):
        ModelRouter(config, "claude-3-5-sonnet")


def test_generate_code(config, monkeypatch):
    calls = []

    def fake_completion(**kwargs):
        calls.append(kwargs)
        return _response("File: App.java\n```java\nclass App {}\n```")

    monkeypatch.setattr(litellm, "completion", fake_completion)
    router = ModelRouter(config)

    content = router.generate_code("make the tests pass")

    assert content.startswith("File: App.java")
    assert calls[0]["model"] == "gpt-4o"
    assert calls[0]["api_key"] == "sk-test"
    assert calls[0]["max_tokens"] == 2000
    assert calls[0]["messages"] == [
        {"role": "system", "content": "You write Java."},
        {"role": "user", "content": "make the tests pass"},
    ]
    assert router.usage.summary()["total_tokens"] == 15
    assert router.usage.summary()["call_count"] == 1


def test_gemini_models_get_provider_prefix(config, monkeypatch):
    calls = []
    monkeypatch.setattr(litellm, "completion", lambda **kw: calls.append(kw) or _response("ok"))
    router = ModelRouter(config.with_updates(api_keys={"gemini": "g"}), "gemini-1.5-pro")
    router.generate_code("hi")
    assert calls[0]["model"] == "gemini/gemini-1.5-pro"


def test_provider_failure_becomes_generation_error(config, monkeypatch):
    router = ModelRouter(config)

    def boom(messages):
        raise RuntimeError("rate limited")

    monkeypatch.setattr(router, "_complete", boom)
    with pytest.raises(GenerationError, match="rate limited"):
        router.generate_code("hi")


def test_empty_response_is_an_error(config, monkeypatch):
    router = ModelRouter(config)
    monkeypatch.setattr(router, "_complete", lambda messages: _response("  "))
    with pytest.raises(GenerationError, match="empty response"):
        router.generate_code("hi")


def test_router_factory_builds_one_router_per_model(config):
    make = router_factory(config.with_updates(api_keys={"openai": "k", "anthropic": "a"}))
    assert make("gpt-4o").model == "gpt-4o"
    assert make("claude-3-opus").family == "anthropic"
