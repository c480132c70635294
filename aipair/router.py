"""
AI Pair Router — Vendor-Agnostic Code Generation

Routes generation calls through LiteLLM so the orchestrator never knows
which vendor is backing the active model. Handles credentials per model
family, retries, usage tracking and structured logging.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import litellm
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_exponential

from aipair.config_loader import MissingAPIKeyError, RunConfig


class GenerationError(Exception):
    """A provider call failed (network, auth, rate limit, empty answer...)."""


class CodeGenerator(Protocol):
    def generate_code(self, prompt: str) -> str: ...


GeneratorFactory = Callable[[str], CodeGenerator]


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class UsageTracker:
    """Tracks token + dollar spend for one model client."""
    usage: UsageRecord = field(default_factory=UsageRecord)

    def record(self, response: Any) -> None:
        """Record usage from a LiteLLM response."""
        usage = getattr(response, "usage", None)
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.usage.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            self.usage.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as e:
            logger.debug(f"[ROUTER] No pricing for response: {e}")

        self.usage.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
        }


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def model_family(model: str) -> str:
    """Map a model name to the provider whose API key it needs."""
    normalized = model.lower()
    if "/" in normalized:
        prefix, _, normalized = normalized.partition("/")
        if prefix in ("openai", "anthropic", "gemini"):
            return prefix
    if normalized.startswith("claude"):
        return "anthropic"
    if normalized.startswith("gemini"):
        return "gemini"
    return "openai"


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("o1", "o3", "o4"))


def _litellm_model(model: str, family: str) -> str:
    if "/" in model:
        return model
    if family == "gemini":
        return f"gemini/{model}"
    return model


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    api_key: str,
) -> dict[str, Any]:
    """
    Build LiteLLM kwargs with per-model param filtering.
    Different model families support different parameters.
    """
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "api_key": api_key,
    }

    if not _is_o_series_model(model):
        kwargs["temperature"] = temperature

    return kwargs


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class ModelRouter:
    """
    Code generation client for one model.

    The orchestrator calls `generate_code(prompt)`; any provider failure
    that survives the retries comes back as GenerationError.
    """

    def __init__(self, config: RunConfig, model: str | None = None):
        self.config = config
        self.model = model or config.model
        self.family = model_family(self.model)
        self.usage = UsageTracker()

        self._api_key = config.api_keys.get(self.family, "")
        if not self._api_key:
            raise MissingAPIKeyError(
                f"No API key found for {self.family} model family (model: {self.model})"
            )

        litellm.suppress_debug_info = True

    def generate_code(self, prompt: str) -> str:
        messages = []
        if self.config.system_prompt:
            messages.append({"role": "system", "content": self.config.system_prompt})
        messages.append({"role": "user", "content": prompt})

        start = time.monotonic()
        logger.debug(f"[ROUTER] → {self.model} ({len(prompt):,} chars)")

        try:
            response = self._complete(messages)
        except Exception as e:
            raise GenerationError(f"{self.model}: {e}") from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        self.usage.record(response)

        content = response.choices[0].message.content or ""
        if not content.strip():
            raise GenerationError(f"{self.model}: empty response")

        logger.debug(
            f"[ROUTER] {self.model} complete — "
            f"{self.usage.usage.total_tokens} tokens, "
            f"${self.usage.usage.estimated_cost:.4f}, "
            f"{elapsed_ms}ms"
        )
        return content

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    def _complete(self, messages: list[dict[str, str]]) -> Any:
        kwargs = _build_kwargs(
            _litellm_model(self.model, self.family),
            messages,
            self.config.temperature,
            self.config.max_tokens,
            self._api_key,
        )
        return litellm.completion(**kwargs)


def router_factory(config: RunConfig) -> GeneratorFactory:
    """Factory handed to the orchestrator: one ModelRouter per active model."""

    def _make(model: str) -> CodeGenerator:
        return ModelRouter(config, model)

    return _make
