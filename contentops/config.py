"""Configuration management for the agent container."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from contentops.core.errors import ConfigError
from contentops.core.registry import CircuitPolicy
from contentops.core.retry import RetryPolicy
from contentops.services.log import DEFAULT_FORMAT


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ModuleConfig(_Section):
    """A module hosted by an agent and its raw settings slice."""

    name: str
    settings: Dict[str, Any] = Field(default_factory=dict)


class AgentConfig(_Section):
    """One hosted agent."""

    name: str = Field(pattern=r"^[a-z][a-z0-9_]*$")
    modules: List[ModuleConfig] = Field(default_factory=list)
    command_timeouts: Dict[str, int] = Field(default_factory=dict)
    default_timeout_ms: int = Field(default=30_000, gt=0)
    workers: int = Field(default=4, ge=1)
    event_workers: int = Field(default=1, ge=1)
    event_buffer: int = Field(default=100, ge=0)
    requeue_delay_ms: int = Field(default=500, ge=0, le=5_000)

    @model_validator(mode="after")
    def _check(self) -> "AgentConfig":
        names = [module.name for module in self.modules]
        if len(names) != len(set(names)):
            raise ValueError(f"agent {self.name!r} lists a module twice")
        if any(value <= 0 for value in self.command_timeouts.values()):
            raise ValueError("command timeouts must be positive")
        return self

    def module(self, name: str) -> Optional[ModuleConfig]:
        return next((module for module in self.modules if module.name == name), None)

    def timeout_for(self, command_type: str) -> float:
        """Deadline budget in seconds for a command type."""
        return self.command_timeouts.get(command_type, self.default_timeout_ms) / 1000


class RetrySettings(_Section):
    max_attempts: int = Field(default=5, ge=1)
    backoff_ms_base: int = Field(default=200, gt=0)
    backoff_cap_ms: int = Field(default=10_000, gt=0)

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_ms_base / 1000,
            backoff_cap=self.backoff_cap_ms / 1000,
        )


class DedupSettings(_Section):
    window_ms: int = Field(default=600_000, gt=0)


class CircuitSettings(_Section):
    failure_threshold: int = Field(default=10, ge=1)
    window_ms: int = Field(default=60_000, gt=0)
    cooldown_ms: int = Field(default=30_000, ge=0)

    def policy(self) -> CircuitPolicy:
        return CircuitPolicy(
            threshold=self.failure_threshold,
            window=self.window_ms / 1000,
            cooldown=self.cooldown_ms / 1000,
        )


class SupervisorSettings(_Section):
    interval_ms: int = Field(default=1_000, gt=0)
    degraded_timeout_ms: int = Field(default=60_000, gt=0)


class MessagingSettings(_Section):
    url: str = "memory://"
    prefetch: int = Field(default=10, ge=1)
    heartbeat_ms: int = Field(default=5_000, gt=0)


class StorageSettings(_Section):
    url: str = "memory://"


class AISettings(_Section):
    """AI provider configuration; ``static`` runs offline."""

    provider: Literal["openai", "azure", "static"] = "static"
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    api_version: str = "2024-02-15-preview"
    default_model: str = "gpt-4o"
    max_concurrent: int = Field(default=8, ge=1)
    timeout_s: float = Field(default=60.0, gt=0)


class LoggingSettings(_Section):
    level: str = "INFO"
    format: str = DEFAULT_FORMAT


class ContainerConfig(_Section):
    """Everything the container needs to build capabilities and agents."""

    environment: str = "development"
    agents: List[AgentConfig] = Field(default_factory=list)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    dedup: DedupSettings = Field(default_factory=DedupSettings)
    circuit: CircuitSettings = Field(default_factory=CircuitSettings)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)
    messaging: MessagingSettings = Field(default_factory=MessagingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    ai: AISettings = Field(default_factory=AISettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    shutdown_grace_ms: int = Field(default=5_000, ge=0)

    @model_validator(mode="after")
    def _unique_agents(self) -> "ContainerConfig":
        names = [agent.name for agent in self.agents]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate agent names: {', '.join(duplicates)}")
        return self

    def agent(self, name: str) -> Optional[AgentConfig]:
        return next((agent for agent in self.agents if agent.name == name), None)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ContainerConfig":
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            raise ConfigError(f"invalid configuration: {exc}") from exc

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ContainerConfig":
        return cls.from_mapping(_read_file(Path(path)))

    @classmethod
    def from_env(cls) -> "ContainerConfig":
        """Load ``CONTENTOPS_CONFIG`` (or the defaults) and apply environment overrides."""
        path = os.getenv("CONTENTOPS_CONFIG")
        data = _read_file(Path(path)) if path else default_mapping()
        return cls.from_mapping(_apply_env(data))


def default_mapping() -> Dict[str, Any]:
    """Creation and optimisation agents on in-memory transports."""
    return {
        "agents": [
            {"name": "creation", "modules": [{"name": "copywriter"}]},
            {
                "name": "optimisation",
                "modules": [{"name": "seo_optimizer"}],
                "command_timeouts": {"generate_seo": 60_000},
            },
        ],
    }


def _read_file(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read configuration {path}: {exc}") from exc
    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot parse configuration {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"configuration {path} must be a mapping")
    return data


def _apply_env(data: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(data)

    def section(name: str) -> Dict[str, Any]:
        data[name] = dict(data.get(name) or {})
        return data[name]

    if os.getenv("ENVIRONMENT"):
        data["environment"] = os.environ["ENVIRONMENT"]
    if os.getenv("CONTENTOPS_STORAGE_URL"):
        section("storage")["url"] = os.environ["CONTENTOPS_STORAGE_URL"]
    if os.getenv("CONTENTOPS_BROKER_URL"):
        section("messaging")["url"] = os.environ["CONTENTOPS_BROKER_URL"]
    if os.getenv("CONTENTOPS_LOG_LEVEL"):
        section("logging")["level"] = os.environ["CONTENTOPS_LOG_LEVEL"]

    azure_key = os.getenv("AZURE_OPENAI_KEY")
    azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
    if azure_key and azure_endpoint:
        ai = section("ai")
        ai.update(provider="azure", api_key=azure_key, endpoint=azure_endpoint)
        if os.getenv("AZURE_OPENAI_API_VERSION"):
            ai["api_version"] = os.environ["AZURE_OPENAI_API_VERSION"]
        if os.getenv("AZURE_OPENAI_DEPLOYMENT"):
            ai["default_model"] = os.environ["AZURE_OPENAI_DEPLOYMENT"]
        if os.getenv("AZURE_OPENAI_MAX_CONCURRENT"):
            ai["max_concurrent"] = int(os.environ["AZURE_OPENAI_MAX_CONCURRENT"])
    elif os.getenv("OPENAI_API_KEY"):
        ai = section("ai")
        ai.update(provider="openai", api_key=os.environ["OPENAI_API_KEY"])
        if os.getenv("OPENAI_BASE_URL"):
            ai["endpoint"] = os.environ["OPENAI_BASE_URL"]
    return data
