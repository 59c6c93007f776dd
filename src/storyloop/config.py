"""Runtime configuration for the story execution loop."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_COMMAND_TEMPLATE = "claude -p --dangerously-skip-permissions --model {model} {prompt}"
DEFAULT_PREFIX_MODELS: tuple[tuple[str, str], ...] = (
    ("US", "sonnet"),
    ("V", "haiku"),
    ("TEST", "haiku"),
    ("BUG", "sonnet"),
    ("AUDIT", "opus"),
    ("MP", "opus"),
)
MODEL_STRATEGIES = ("single", "smart")
MAX_VERIFICATION_AGENTS = 3


@dataclass(frozen=True, slots=True)
class LoopSettings:
    """Scheduler loop limits and pacing."""

    max_iterations: int = 100
    gap_seconds: float = 2.0
    observer_interval_seconds: float = 2.0


@dataclass(frozen=True, slots=True)
class ExecutorSettings:
    """How executor processes are launched."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    prompt_file: Path | None = None
    agent_name: str = "storyloop"


@dataclass(frozen=True, slots=True)
class RetrySettings:
    """Independent budgets for transient and no-response failures."""

    max_retries: int = 5
    cooldown_seconds: float = 15.0
    no_response_max_retries: int = 3
    no_response_cooldown_seconds: float = 30.0
    block_on_exhaustion: bool = False


@dataclass(frozen=True, slots=True)
class RoutingSettings:
    """Model selection by job id prefix."""

    strategy: str = "smart"
    default_model: str = "opus"
    unknown_prefix_model: str = "sonnet"
    prefix_models: tuple[tuple[str, str], ...] = DEFAULT_PREFIX_MODELS

    def model_for_prefix(self, prefix: str) -> str | None:
        for known, model in self.prefix_models:
            if known == prefix:
                return model
        return None


@dataclass(frozen=True, slots=True)
class VerificationSettings:
    """Parallel verification fan-out."""

    enabled: bool = True
    agents: int = MAX_VERIFICATION_AGENTS
    prefixes: tuple[str, ...] = ("V",)


@dataclass(frozen=True, slots=True)
class ClassifierSettings:
    """Output window scanned for error patterns."""

    head_lines: int = 5
    tail_lines: int = 10


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Immutable engine configuration passed explicitly to every component."""

    working_dir: Path = Path()
    store_dir: Path = Path("prd-json")
    state_dir: Path = Path(".storyloop")
    auto_kill_orphans: bool = True
    loop: LoopSettings = field(default_factory=LoopSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    routing: RoutingSettings = field(default_factory=RoutingSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)
    classifier: ClassifierSettings = field(default_factory=ClassifierSettings)

    @classmethod
    def from_env(
        cls,
        *,
        working_dir: Path | None = None,
        config_file: Path | None = None,
    ) -> EngineConfig:
        """Load settings from a config file and environment, env taking precedence."""

        working = working_dir or Path(os.getenv("STORYLOOP_WORKING_DIR", "."))
        state_dir = working / os.getenv("STORYLOOP_STATE_DIR", ".storyloop")
        env_config_file = os.getenv("STORYLOOP_CONFIG_FILE")
        file_path = config_file or (
            Path(env_config_file) if env_config_file else state_dir / "config.json"
        )
        layer = read_config_file(file_path)

        prompt_file = os.getenv("STORYLOOP_PROMPT_FILE")
        prefix_models = layer.get("prefix_models", DEFAULT_PREFIX_MODELS)
        env_prefix_models = os.getenv("STORYLOOP_PREFIX_MODELS")
        if env_prefix_models:
            prefix_models = _parse_prefix_models(env_prefix_models, "STORYLOOP_PREFIX_MODELS")

        return cls(
            working_dir=working,
            store_dir=working / os.getenv("STORYLOOP_STORE_DIR", "prd-json"),
            state_dir=state_dir,
            auto_kill_orphans=_env_bool("STORYLOOP_AUTO_KILL_ORPHANS", default=True),
            loop=LoopSettings(
                max_iterations=int(
                    os.getenv("STORYLOOP_MAX_ITERATIONS", str(layer.get("max_iterations", 100))),
                ),
                gap_seconds=float(
                    os.getenv("STORYLOOP_GAP_SECONDS", str(layer.get("gap_seconds", 2.0))),
                ),
                observer_interval_seconds=float(
                    os.getenv("STORYLOOP_OBSERVER_INTERVAL_SECONDS", "2.0"),
                ),
            ),
            executor=ExecutorSettings(
                command_template=os.getenv(
                    "STORYLOOP_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                prompt_file=Path(prompt_file) if prompt_file else None,
                agent_name=os.getenv("STORYLOOP_AGENT_NAME", "storyloop"),
            ),
            retry=RetrySettings(
                max_retries=int(
                    os.getenv("STORYLOOP_MAX_RETRIES", str(layer.get("max_retries", 5))),
                ),
                cooldown_seconds=float(
                    os.getenv(
                        "STORYLOOP_COOLDOWN_SECONDS",
                        str(layer.get("cooldown_seconds", 15.0)),
                    ),
                ),
                no_response_max_retries=int(
                    os.getenv(
                        "STORYLOOP_NO_RESPONSE_MAX_RETRIES",
                        str(layer.get("no_response_max_retries", 3)),
                    ),
                ),
                no_response_cooldown_seconds=float(
                    os.getenv(
                        "STORYLOOP_NO_RESPONSE_COOLDOWN_SECONDS",
                        str(layer.get("no_response_cooldown_seconds", 30.0)),
                    ),
                ),
                block_on_exhaustion=_env_bool(
                    "STORYLOOP_BLOCK_ON_EXHAUSTION",
                    default=False,
                ),
            ),
            routing=RoutingSettings(
                strategy=os.getenv(
                    "STORYLOOP_MODEL_STRATEGY",
                    layer.get("strategy", "smart"),
                ).strip().lower(),
                default_model=os.getenv(
                    "STORYLOOP_DEFAULT_MODEL",
                    layer.get("default_model", "opus"),
                ),
                unknown_prefix_model=os.getenv(
                    "STORYLOOP_UNKNOWN_PREFIX_MODEL",
                    layer.get("unknown_prefix_model", "sonnet"),
                ),
                prefix_models=prefix_models,
            ),
            verification=VerificationSettings(
                enabled=_env_bool(
                    "STORYLOOP_PARALLEL_VERIFICATION",
                    default=layer.get("verification_enabled", True),
                ),
                agents=int(
                    os.getenv(
                        "STORYLOOP_PARALLEL_AGENTS",
                        str(layer.get("verification_agents", MAX_VERIFICATION_AGENTS)),
                    ),
                ),
                prefixes=_split_csv(os.getenv("STORYLOOP_VERIFICATION_PREFIXES", "V")),
            ),
            classifier=ClassifierSettings(
                head_lines=int(os.getenv("STORYLOOP_CLASSIFIER_HEAD_LINES", "5")),
                tail_lines=int(os.getenv("STORYLOOP_CLASSIFIER_TAIL_LINES", "10")),
            ),
        )

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def control_dir(self) -> Path:
        return self.state_dir / "control"

    @property
    def dead_letter_dir(self) -> Path:
        return self.state_dir / "dead-letter"

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    @property
    def sessions_file(self) -> Path:
        return self.state_dir / "sessions.txt"

    @property
    def status_file(self) -> Path:
        return self.state_dir / "status.json"

    @property
    def progress_file(self) -> Path:
        return self.state_dir / "progress.txt"

    def validate(self) -> None:
        """Raise configuration error on values the engine cannot run with."""

        if self.loop.max_iterations < 1:
            raise ValueError("STORYLOOP_MAX_ITERATIONS must be >= 1.")
        if self.loop.gap_seconds < 0:
            raise ValueError("STORYLOOP_GAP_SECONDS must be >= 0.")
        if self.loop.observer_interval_seconds <= 0:
            raise ValueError("STORYLOOP_OBSERVER_INTERVAL_SECONDS must be > 0.")
        template = self.executor.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError("STORYLOOP_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.")
        if self.executor.prompt_file is not None and not self.executor.prompt_file.exists():
            raise ValueError(f"STORYLOOP_PROMPT_FILE not found: {self.executor.prompt_file}")
        if self.retry.max_retries < 1:
            raise ValueError("STORYLOOP_MAX_RETRIES must be >= 1.")
        if self.retry.no_response_max_retries < 1:
            raise ValueError("STORYLOOP_NO_RESPONSE_MAX_RETRIES must be >= 1.")
        if self.retry.cooldown_seconds < 0 or self.retry.no_response_cooldown_seconds < 0:
            raise ValueError("Retry cooldowns must be >= 0.")
        if self.routing.strategy not in MODEL_STRATEGIES:
            raise ValueError(
                f"STORYLOOP_MODEL_STRATEGY must be one of {', '.join(MODEL_STRATEGIES)}.",
            )
        if not 1 <= self.verification.agents <= MAX_VERIFICATION_AGENTS:
            raise ValueError(
                f"STORYLOOP_PARALLEL_AGENTS must be between 1 and {MAX_VERIFICATION_AGENTS}.",
            )
        if self.classifier.head_lines < 0 or self.classifier.tail_lines < 0:
            raise ValueError("Classifier line windows must be >= 0.")


def read_config_file(path: Path) -> dict[str, Any]:
    """Flatten an optional `config.json` into settings keys."""

    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid JSON in config file {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"Config file {path} must contain a JSON object.")

    layer: dict[str, Any] = {}
    _copy(payload, "modelStrategy", layer, "strategy")
    _copy(payload, "defaultModel", layer, "default_model")
    _copy(payload, "unknownTaskType", layer, "unknown_prefix_model")
    _copy(payload, "parallelVerification", layer, "verification_enabled")
    _copy(payload, "parallelAgents", layer, "verification_agents")

    models = payload.get("models")
    if models is not None:
        if not isinstance(models, dict) or not all(
            isinstance(value, str) for value in models.values()
        ):
            raise ValueError(f"Config file {path}: models must map prefixes to model names.")
        merged = dict(DEFAULT_PREFIX_MODELS)
        merged.update({str(key).upper(): value for key, value in models.items()})
        layer["prefix_models"] = tuple(merged.items())

    defaults = payload.get("defaults") or {}
    if isinstance(defaults, dict):
        _copy(defaults, "maxIterations", layer, "max_iterations")
        _copy(defaults, "sleepSeconds", layer, "gap_seconds")

    error_handling = payload.get("errorHandling") or {}
    if isinstance(error_handling, dict):
        _copy(error_handling, "maxRetries", layer, "max_retries")
        _copy(error_handling, "noMessagesMaxRetries", layer, "no_response_max_retries")
        _copy(error_handling, "generalCooldownSeconds", layer, "cooldown_seconds")
        _copy(error_handling, "noMessagesCooldownSeconds", layer, "no_response_cooldown_seconds")
    return layer


def _copy(source: dict[str, Any], key: str, target: dict[str, Any], name: str) -> None:
    if key in source and source[key] is not None:
        target[name] = source[key]


def _parse_prefix_models(raw: str, env_name: str) -> tuple[tuple[str, str], ...]:
    merged = dict(DEFAULT_PREFIX_MODELS)
    for item in _split_csv(raw):
        prefix, sep, model = item.partition("=")
        if not sep or not prefix.strip() or not model.strip():
            raise ValueError(f"Invalid {env_name} entry {item!r}; expected PREFIX=model.")
        merged[prefix.strip().upper()] = model.strip()
    return tuple(merged.items())


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
