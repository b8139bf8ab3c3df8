"""
Configuration management for the sub-agent pipeline.

Settings are grouped into dataclass sections. Values come from defaults,
then an optional JSON file, then SECONDBRAIN_* environment variables.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv

from .errors import ConfigError

# Auto-load .env from project root
_project_root = Path(__file__).parent.parent
_env_file = _project_root / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

CONFIG_PATH = Path.home() / ".secondbrain" / "config.json"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _filter_dataclass_fields(data: dict[str, Any], cls: type) -> dict[str, Any]:
    """Filter dict to only include fields that exist in the dataclass."""
    valid_fields = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in valid_fields}


def _env_int(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _env_bool(name: str) -> bool | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value.lower() in ("1", "true", "yes", "on")


@dataclass
class LimitsConfig:
    """Call, depth and parallelism ceilings."""

    max_total_calls: int = 50
    max_refinement_iterations: int = 5
    max_parallel_agents: int = 5
    max_depth: int = 2
    session_timeout_minutes: int = 30
    # Sessions created for sub-agents may not create children of their own
    sub_agents_can_spawn: bool = False
    # None leaves the tool-call loop bounded only by the attempt timeout
    max_tool_rounds: int | None = None


@dataclass
class QualityConfig:
    """Quality scoring and refinement policy."""

    threshold: int = 70
    trend_window: int = 3
    trend_min_scores: int = 3
    trend_delta: int = 5
    max_correction_attempts: int = 1
    refinement_state_max_age_hours: int = 24


@dataclass
class ContextConfig:
    """Context window and history pruning settings."""

    max_messages: int = 20
    max_history_tokens: int = 100_000
    task_share: float = 0.3
    domain_share: float = 0.4
    general_share: float = 0.3
    default_budget_tokens: int = 8000
    critical_budget_tokens: int = 12000
    min_compression_ratio: float = 0.1
    code_block_max_chars: int = 500
    code_block_max_lines: int = 10
    assistant_max_chars: int = 1000
    user_max_chars: int = 3000


@dataclass
class ModelConfig:
    """Provider and model selection."""

    provider: Literal["openai", "anthropic"] = "openai"
    primary_model: str = "gpt-4"
    subagent_model: str = "gpt-4o-mini"
    max_tokens: int = 4000
    # Low temperature keeps structured output stable
    temperature: float = 0.3
    base_url: str | None = None


@dataclass
class StoreConfig:
    """Where session records live."""

    path: str = "~/.secondbrain/sessions"

    @property
    def root(self) -> Path:
        return Path(self.path).expanduser()


@dataclass
class SubAgentConfig:
    """
    Complete pipeline configuration.

    Loaded from ~/.secondbrain/config.json when present, with
    SECONDBRAIN_* environment variables taking precedence.
    """

    limits: LimitsConfig = field(default_factory=LimitsConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    models: ModelConfig = field(default_factory=ModelConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    log_level: str = "info"

    @classmethod
    def load(cls, path: Path | None = None, apply_env: bool = True) -> "SubAgentConfig":
        """Load configuration from file, then apply environment overrides."""
        if path is None:
            path = CONFIG_PATH

        data: dict[str, Any] = {}
        if path.exists():
            with open(path) as f:
                data = json.load(f)

        config = cls(
            limits=LimitsConfig(**_filter_dataclass_fields(data.get("limits", {}), LimitsConfig)),
            quality=QualityConfig(**_filter_dataclass_fields(data.get("quality", {}), QualityConfig)),
            context=ContextConfig(**_filter_dataclass_fields(data.get("context", {}), ContextConfig)),
            models=ModelConfig(**_filter_dataclass_fields(data.get("models", {}), ModelConfig)),
            store=StoreConfig(**_filter_dataclass_fields(data.get("store", {}), StoreConfig)),
            log_level=data.get("log_level", "info"),
        )
        if apply_env:
            config.apply_env()
        config.validate()
        return config

    @classmethod
    def from_env(cls) -> "SubAgentConfig":
        """Defaults plus environment overrides, no config file."""
        config = cls()
        config.apply_env()
        config.validate()
        return config

    def apply_env(self) -> None:
        """Apply SECONDBRAIN_* environment overrides in place."""
        int_overrides = {
            "SECONDBRAIN_MAX_CALLS": (self.limits, "max_total_calls"),
            "SECONDBRAIN_MAX_REFINEMENTS": (self.limits, "max_refinement_iterations"),
            "SECONDBRAIN_MAX_PARALLEL_AGENTS": (self.limits, "max_parallel_agents"),
            "SECONDBRAIN_MAX_DEPTH": (self.limits, "max_depth"),
            "SECONDBRAIN_SESSION_TIMEOUT": (self.limits, "session_timeout_minutes"),
            "SECONDBRAIN_MAX_TOOL_ROUNDS": (self.limits, "max_tool_rounds"),
            "SECONDBRAIN_QUALITY_THRESHOLD": (self.quality, "threshold"),
        }
        for name, (section, attr) in int_overrides.items():
            value = _env_int(name)
            if value is not None:
                setattr(section, attr, value)

        can_spawn = _env_bool("SECONDBRAIN_SUBAGENTS_CAN_SPAWN")
        if can_spawn is not None:
            self.limits.sub_agents_can_spawn = can_spawn

        if os.getenv("SECONDBRAIN_PROVIDER"):
            self.models.provider = os.environ["SECONDBRAIN_PROVIDER"].lower()
        if os.getenv("SECONDBRAIN_PRIMARY_MODEL"):
            self.models.primary_model = os.environ["SECONDBRAIN_PRIMARY_MODEL"]
        if os.getenv("SECONDBRAIN_SUBAGENT_MODEL"):
            self.models.subagent_model = os.environ["SECONDBRAIN_SUBAGENT_MODEL"]
        if os.getenv("SECONDBRAIN_SESSION_PATH"):
            self.store.path = os.environ["SECONDBRAIN_SESSION_PATH"]
        if os.getenv("SECONDBRAIN_LOG_LEVEL"):
            self.log_level = os.environ["SECONDBRAIN_LOG_LEVEL"].lower()

    def validate(self) -> None:
        """
        Check ranges and raise ConfigError on the first bad value.

        Raises:
            ConfigError: If any setting is out of range
        """
        limits = self.limits
        if not 1 <= limits.max_total_calls <= 100:
            raise ConfigError("max_total_calls must be between 1 and 100")
        if not 1 <= limits.max_refinement_iterations <= 10:
            raise ConfigError("max_refinement_iterations must be between 1 and 10")
        if limits.max_parallel_agents < 1:
            raise ConfigError("max_parallel_agents must be a positive integer")
        if limits.max_depth < 1:
            raise ConfigError("max_depth must be a positive integer")
        if limits.session_timeout_minutes < 1:
            raise ConfigError("session_timeout_minutes must be a positive integer")
        if limits.max_tool_rounds is not None and limits.max_tool_rounds < 1:
            raise ConfigError("max_tool_rounds must be a positive integer when set")
        if not 0 <= self.quality.threshold <= 100:
            raise ConfigError("quality threshold must be between 0 and 100")
        if self.models.provider not in ("openai", "anthropic"):
            raise ConfigError(f"unknown provider: {self.models.provider}")

        shares = self.context.task_share + self.context.domain_share + self.context.general_share
        if abs(shares - 1.0) > 0.01:
            raise ConfigError(f"context tier shares must sum to 1.0, got {shares:.2f}")
        if self.log_level.lower() not in LOG_LEVELS:
            raise ConfigError(
                f"invalid log level: {self.log_level} (must be debug, info, warn, or error)"
            )

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        if path is None:
            path = CONFIG_PATH

        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            json.dump(
                {
                    "limits": asdict(self.limits),
                    "quality": asdict(self.quality),
                    "context": asdict(self.context),
                    "models": asdict(self.models),
                    "store": asdict(self.store),
                    "log_level": self.log_level,
                },
                f,
                indent=2,
            )


def configure_logging(level: str = "info") -> None:
    """Install a basic stderr handler for hosts without their own logging setup."""
    logging.basicConfig(
        level=LOG_LEVELS.get(level.lower(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Default configuration instance
default_config = SubAgentConfig()


__all__ = [
    "LimitsConfig",
    "QualityConfig",
    "ContextConfig",
    "ModelConfig",
    "StoreConfig",
    "SubAgentConfig",
    "configure_logging",
    "default_config",
    "CONFIG_PATH",
]
