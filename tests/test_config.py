from __future__ import annotations

import dataclasses
import json
from pathlib import Path

import allure
import pytest

from storyloop.config import EngineConfig, ExecutorSettings, VerificationSettings

pytestmark = [
    allure.epic("Story Engine"),
    allure.feature("Configuration"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in (
        "STORYLOOP_WORKING_DIR",
        "STORYLOOP_STATE_DIR",
        "STORYLOOP_CONFIG_FILE",
        "STORYLOOP_MAX_ITERATIONS",
        "STORYLOOP_MODEL_STRATEGY",
        "STORYLOOP_PREFIX_MODELS",
        "STORYLOOP_BLOCK_ON_EXHAUSTION",
        "STORYLOOP_NO_RESPONSE_MAX_RETRIES",
        "STORYLOOP_COMMAND_TEMPLATE",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = EngineConfig.from_env(working_dir=tmp_path)

    assert config.store_dir == tmp_path / "prd-json"
    assert config.logs_dir == tmp_path / ".storyloop" / "logs"
    assert config.loop.max_iterations == 100
    assert config.retry.max_retries == 5
    assert config.retry.no_response_max_retries == 3
    assert config.retry.no_response_cooldown_seconds == 30.0
    assert config.retry.block_on_exhaustion is False
    assert config.routing.strategy == "smart"
    assert config.routing.model_for_prefix("US") == "sonnet"
    assert config.routing.model_for_prefix("V") == "haiku"
    assert config.verification.agents == 3
    config.validate()


def test_config_file_is_layered_under_environment(tmp_path: Path, monkeypatch) -> None:
    state_dir = tmp_path / ".storyloop"
    state_dir.mkdir()
    (state_dir / "config.json").write_text(
        json.dumps(
            {
                "modelStrategy": "single",
                "defaultModel": "opus",
                "models": {"us": "haiku", "DOCS": "sonnet"},
                "defaults": {"maxIterations": 7, "sleepSeconds": 0},
                "errorHandling": {"maxRetries": 2, "noMessagesMaxRetries": 4},
            },
        ),
        "utf-8",
    )
    monkeypatch.setenv("STORYLOOP_MAX_ITERATIONS", "9")

    config = EngineConfig.from_env(working_dir=tmp_path)

    assert config.loop.max_iterations == 9
    assert config.loop.gap_seconds == 0.0
    assert config.retry.max_retries == 2
    assert config.retry.no_response_max_retries == 4
    assert config.routing.strategy == "single"
    assert config.routing.model_for_prefix("US") == "haiku"
    assert config.routing.model_for_prefix("DOCS") == "sonnet"
    assert config.routing.model_for_prefix("V") == "haiku"


def test_prefix_models_from_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("STORYLOOP_PREFIX_MODELS", "bug=opus, SPIKE=haiku")

    config = EngineConfig.from_env(working_dir=tmp_path)

    assert config.routing.model_for_prefix("BUG") == "opus"
    assert config.routing.model_for_prefix("SPIKE") == "haiku"


def test_malformed_prefix_models_are_rejected(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("STORYLOOP_PREFIX_MODELS", "US")

    with pytest.raises(ValueError, match="expected PREFIX=model"):
        EngineConfig.from_env(working_dir=tmp_path)


def test_invalid_boolean_is_rejected(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("STORYLOOP_BLOCK_ON_EXHAUSTION", "sometimes")

    with pytest.raises(ValueError, match="Invalid boolean value for STORYLOOP_BLOCK_ON"):
        EngineConfig.from_env(working_dir=tmp_path)


def test_invalid_config_json_is_rejected(tmp_path: Path) -> None:
    config_file = tmp_path / "config.json"
    config_file.write_text("[1, 2]", "utf-8")

    with pytest.raises(ValueError, match="must contain a JSON object"):
        EngineConfig.from_env(working_dir=tmp_path, config_file=config_file)


def test_validate_requires_prompt_placeholder() -> None:
    config = EngineConfig(executor=ExecutorSettings(command_template="agent --model {model}"))

    with pytest.raises(ValueError, match="must include"):
        config.validate()


def test_validate_limits_verification_agents() -> None:
    config = EngineConfig(verification=VerificationSettings(agents=4))

    with pytest.raises(ValueError, match="between 1 and 3"):
        config.validate()


def test_validate_rejects_unknown_strategy(engine_config) -> None:
    config = dataclasses.replace(
        engine_config,
        routing=dataclasses.replace(engine_config.routing, strategy="random"),
    )

    with pytest.raises(ValueError, match="STORYLOOP_MODEL_STRATEGY"):
        config.validate()


def test_validate_rejects_zero_retry_budget(engine_config) -> None:
    config = dataclasses.replace(
        engine_config,
        retry=dataclasses.replace(engine_config.retry, no_response_max_retries=0),
    )

    with pytest.raises(ValueError, match="NO_RESPONSE_MAX_RETRIES"):
        config.validate()
