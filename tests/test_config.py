import json

import pytest
from pydantic import ValidationError

from aipair.config_loader import (
    ConfigError,
    MissingAPIKeyError,
    MissingLogLevelError,
    MissingTmpDirError,
    RunConfig,
    load_config,
    validate_api_keys,
)

_KEY_VARS = ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GEMINI_API_KEY")


@pytest.fixture(autouse=True)
def _no_env_keys(monkeypatch):
    for var in _KEY_VARS:
        monkeypatch.delenv(var, raising=False)


def test_missing_api_key_fails():
    with pytest.raises(MissingAPIKeyError):
        RunConfig(log_level="info", tmp_dir="tmp")


def test_blank_api_keys_count_as_missing():
    with pytest.raises(MissingAPIKeyError):
        RunConfig(log_level="info", tmp_dir="tmp", api_keys={"openai": "  ", "gemini": ""})


def test_missing_log_level_and_tmp_dir():
    with pytest.raises(MissingLogLevelError):
        RunConfig(tmp_dir="tmp", api_keys={"openai": "k"})
    with pytest.raises(MissingTmpDirError):
        RunConfig(log_level="info", api_keys={"openai": "k"})


def test_config_errors_share_a_base():
    assert issubclass(MissingAPIKeyError, ConfigError)
    assert not issubclass(ConfigError, ValueError)


def test_flat_and_camel_case_keys_are_accepted():
    config = RunConfig(**{
        "logLevel": "debug",
        "tmpDir": "tmp",
        "anthropicApiKey": "ak",
        "numRetries": 5,
        "escalateToPremiumModel": True,
    })
    assert config.api_keys == {"anthropic": "ak"}
    assert config.num_retries == 5
    assert config.escalate_to_premium_model is True


def test_defaults():
    config = RunConfig(log_level="info", tmp_dir="tmp", api_keys={"openai": "k"})
    assert config.model == "gpt-4o"
    assert config.escalation_model == "o1-preview"
    assert config.escalation_model != config.model
    assert config.escalate_to_premium_model is False
    assert config.num_retries == 3
    assert config.max_tokens == 2000
    assert config.temperature == 0.7
    assert config.extension == ".java"


def test_num_retries_must_be_positive():
    with pytest.raises(ValidationError):
        RunConfig(log_level="info", tmp_dir="tmp", api_keys={"openai": "k"}, num_retries=0)


def test_config_is_frozen(config):
    with pytest.raises(ValidationError):
        config.model = "claude-sonnet"


def test_with_updates_returns_new_validated_config(config):
    updated = config.with_updates(model="claude-3-5-sonnet", num_retries=1)
    assert updated.model == "claude-3-5-sonnet"
    assert config.model == "gpt-4o"

    with pytest.raises(MissingAPIKeyError):
        config.with_updates(api_keys={})


def test_paths_resolve_against_project_root(config, project):
    assert config.source_path == (project / "src" / "main" / "java").resolve()
    assert config.test_path == (project / "src" / "test" / "java").resolve()
    assert config.work_path == (project / ".ai-pair").resolve()


def test_public_dict_masks_keys(config):
    data = config.public_dict()
    assert data["apiKeys"] == {"openai": "***"}
    assert data["numRetries"] == 3


def test_load_config_file_wins_over_flags(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "from-env")
    (tmp_path / "ai-pair-config.json").write_text(json.dumps({
        "model": "claude-3-5-sonnet",
        "logLevel": "warn",
    }))

    config = load_config(
        flags={"model": "gpt-4o-mini", "extension": ".kt", "tmp_dir": None},
        cwd=tmp_path,
    )

    assert config.model == "claude-3-5-sonnet"      # file beats flag
    assert config.extension == ".kt"                # flag beats default
    assert config.log_level == "warn"
    assert config.tmp_dir == ".ai-pair"             # unset flag falls back to default
    assert config.api_keys["openai"] == "from-env"
    assert "{filesContent}" in config.prompt_template


def test_load_config_test_dir_flag(tmp_path, monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "g")
    config = load_config(flags={"test_dir": "tests/java"}, cwd=tmp_path)
    assert config.test_source_dir == "tests/java"
    assert config.api_keys == {"gemini": "g"}


def test_load_config_yaml_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("model: gemini-1.5-pro\ngeminiApiKey: gk\nnumRetries: 2\n")

    config = load_config(config_file=path, cwd=tmp_path)

    assert config.model == "gemini-1.5-pro"
    assert config.api_keys == {"gemini": "gk"}
    assert config.num_retries == 2


def test_load_config_explicit_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(config_file=tmp_path / "nope.json", cwd=tmp_path)


def test_load_config_without_keys_fails(tmp_path):
    with pytest.raises(MissingAPIKeyError):
        load_config(cwd=tmp_path)


def test_validate_api_keys(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "x")
    keys = validate_api_keys()
    assert keys["ANTHROPIC_API_KEY"] is True
    assert keys["OPENAI_API_KEY"] is False
