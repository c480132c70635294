"""
Configuration loader for AI Pair.

Merges, lowest to highest precedence:
  1. Built-in defaults
  2. CLI flags
  3. The JSON (or YAML) config file; the file wins on conflict

The merged mapping is the only input to RunConfig, which validates
and then freezes itself for the lifetime of a run.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel, to_snake


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ConfigError(Exception):
    """Base class for fatal configuration problems."""


class MissingAPIKeyError(ConfigError):
    pass


class MissingLogLevelError(ConfigError):
    pass


class MissingTmpDirError(ConfigError):
    pass


class PromptFileNotFoundError(ConfigError):
    pass


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

PROVIDERS = ("anthropic", "openai", "gemini")

_PROVIDER_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}

# CLI flag spellings that do not match a RunConfig field name
_RENAMED_KEYS = {"test_dir": "test_source_dir"}


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Map camelCase / flag spellings onto snake_case field names."""
    normalized: dict[str, Any] = {}
    for key, value in data.items():
        name = to_snake(key)
        normalized[_RENAMED_KEYS.get(name, name)] = value
    return normalized


class RunConfig(BaseModel):
    """Immutable configuration for one run."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    # Models
    model: str = "gpt-4o"
    escalation_model: str = "o1-preview"
    escalate_to_premium_model: bool = False

    # Paths (relative ones resolve against project_root)
    project_root: Path = Path(".")
    src_dir: str = "src/main/java"
    test_source_dir: str = "src/test/java"
    test_results_dir: str = "build/test-results/test"
    extension: str = ".java"
    tmp_dir: str = ""
    prompts_path: str = ""

    # Credentials: provider name → key
    api_keys: dict[str, str] = Field(default_factory=dict)

    log_level: str = ""

    # Policy
    num_retries: int = Field(default=3, ge=1)
    auto_watch: bool = False
    max_tokens: int = Field(default=2000, gt=0)
    temperature: float = 0.7
    watch_interval: float = Field(default=2.0, gt=0)

    # Toolchain (detected from the project when unset)
    build_command: str | None = None
    test_command: str | None = None

    # Templates
    system_prompt: str = ""
    prompt_template: str = ""
    no_issue_prompt_template: str = ""

    @model_validator(mode="before")
    @classmethod
    def _fold_api_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = _normalize_keys(data)
        keys = {k: v or "" for k, v in (data.get("api_keys") or {}).items()}
        for provider in PROVIDERS:
            flat = data.pop(f"{provider}_api_key", None)
            if flat and not keys.get(provider):
                keys[provider] = flat
        data["api_keys"] = keys
        return data

    @model_validator(mode="after")
    def _check_required(self) -> "RunConfig":
        # ConfigError is not a ValueError, so pydantic lets it through unwrapped
        if not any(v.strip() for v in self.api_keys.values()):
            raise MissingAPIKeyError(
                "No API key provided. Set one of: "
                + ", ".join(_PROVIDER_ENV.values())
            )
        if not self.log_level.strip():
            raise MissingLogLevelError("Log level is not provided")
        if not self.tmp_dir.strip():
            raise MissingTmpDirError("Tmp directory is not provided")
        return self

    # -- Derived paths ------------------------------------------------------

    def _resolve(self, value: str | Path) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = Path(self.project_root).expanduser() / path
        return path.resolve()

    @property
    def root_path(self) -> Path:
        return Path(self.project_root).expanduser().resolve()

    @property
    def source_path(self) -> Path:
        return self._resolve(self.src_dir)

    @property
    def test_path(self) -> Path:
        return self._resolve(self.test_source_dir)

    @property
    def test_results_path(self) -> Path:
        return self._resolve(self.test_results_dir)

    @property
    def work_path(self) -> Path:
        """Scratch directory for logs and per-cycle artifacts."""
        return self._resolve(self.tmp_dir)

    # -- Updates / display --------------------------------------------------

    def with_updates(self, **changes: Any) -> "RunConfig":
        """Return a new, re-validated config with `changes` applied."""
        return RunConfig(**{**self.model_dump(), **changes})

    def public_dict(self) -> dict[str, Any]:
        """JSON-safe view for observers, with credentials masked."""
        data = self.model_dump(mode="json", by_alias=True)
        data["apiKeys"] = {
            provider: ("***" if key else "") for provider, key in self.api_keys.items()
        }
        return data


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_FILE = "ai-pair-config.json"
BUNDLED_PROMPTS = Path(__file__).parent / "prompts"

PROMPT_FILES = {
    "system_prompt": "system_prompt.txt",
    "prompt_template": "prompt_template.txt",
    "no_issue_prompt_template": "no_issue_prompt_template.txt",
}

_DEFAULTS: dict[str, Any] = {
    "model": "gpt-4o",
    "project_root": ".",
    "extension": ".java",
    "test_source_dir": "src/test/java",
    "log_level": "info",
    "tmp_dir": ".ai-pair",
    "prompts_path": str(BUNDLED_PROMPTS),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_config_file(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text) if text.strip() else {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")
    return data


def load_prompts(prompts_path: str | Path) -> dict[str, str]:
    """Read the three prompt templates from a prompts directory."""
    base = Path(prompts_path).expanduser()
    prompts = {}
    for field_name, filename in PROMPT_FILES.items():
        path = base / filename
        if not path.is_file():
            raise PromptFileNotFoundError(f"Prompt file not found at path: {path}")
        prompts[field_name] = path.read_text(encoding="utf-8")
    return prompts


def load_config(
    flags: dict[str, Any] | None = None,
    config_file: Path | None = None,
    cwd: Path | None = None,
) -> RunConfig:
    """
    Build a RunConfig by merging:
      1. Built-in defaults
      2. CLI flags (None values are treated as unset)
      3. Config file (explicit path, or ./ai-pair-config.json if present)
    then filling missing API keys from the environment and missing
    templates from the prompts directory.
    """
    merged: dict[str, Any] = dict(_DEFAULTS)

    if flags:
        cleaned = _normalize_keys({k: v for k, v in flags.items() if v is not None})
        merged = _deep_merge(merged, cleaned)

    path = config_file or (cwd or Path.cwd()) / DEFAULT_CONFIG_FILE
    if path.exists():
        merged = _deep_merge(merged, _normalize_keys(_read_config_file(path)))
    elif config_file is not None:
        raise ConfigError(f"Config file not found: {config_file}")

    keys = dict(merged.get("api_keys") or {})
    for provider, env_var in _PROVIDER_ENV.items():
        if not keys.get(provider) and not merged.get(f"{provider}_api_key"):
            env_value = os.environ.get(env_var, "")
            if env_value:
                keys[provider] = env_value
    merged["api_keys"] = keys

    missing = [name for name in PROMPT_FILES if not merged.get(name)]
    if missing:
        prompts = load_prompts(merged["prompts_path"])
        for name in missing:
            merged[name] = prompts[name]

    return RunConfig(**merged)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available in the environment."""
    return {env_var: bool(os.environ.get(env_var)) for env_var in _PROVIDER_ENV.values()}
