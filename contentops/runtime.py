"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache
from typing import Dict, Mapping, Optional

from contentops.agents import creation, optimisation
from contentops.agents.blueprint import AgentBlueprint
from contentops.config import ContainerConfig
from contentops.core.capabilities import AI, CLOCK, LOGGER, STORAGE
from contentops.core.errors import ConfigError
from contentops.core.registry import CapabilityFactory
from contentops.orchestration.container import AgentContainer
from contentops.services.ai_provider import create_ai_provider
from contentops.services.clock import SystemClock
from contentops.services.log import LoggerFactory
from contentops.services.sqlite_storage import SqliteStorage
from contentops.services.storage import InMemoryStorage

_AGENT_CATALOG: Dict[str, AgentBlueprint] = {
    "creation": creation.blueprint,
    "optimisation": optimisation.blueprint,
}


async def open_storage(url: str):
    """``memory://``, ``sqlite:///path/to.db`` or ``sqlite://:memory:``."""
    if url.startswith("memory://"):
        return InMemoryStorage()
    if url.startswith("sqlite://"):
        path = url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:] or ":memory:"
        return await SqliteStorage.open(path or ":memory:")
    raise ConfigError(f"unsupported storage url {url!r}")


def default_capabilities(config: ContainerConfig) -> Dict[str, CapabilityFactory]:
    """Factories for logger, clock, storage and ai built from configuration."""
    return {
        LOGGER: lambda registry: LoggerFactory(config.logging.level, config.logging.format),
        CLOCK: lambda registry: SystemClock(),
        STORAGE: lambda registry: open_storage(config.storage.url),
        AI: lambda registry: create_ai_provider(config.ai),
    }


def build_container(
    config: ContainerConfig,
    *,
    capabilities: Optional[Mapping[str, CapabilityFactory]] = None,
    blueprints: Optional[Mapping[str, AgentBlueprint]] = None,
) -> AgentContainer:
    """Container over the default capabilities, with ``capabilities`` replacing any of them."""
    factories = default_capabilities(config)
    factories.update(capabilities or {})
    return AgentContainer.build(config, blueprints=blueprints or _AGENT_CATALOG, capabilities=factories)


@lru_cache
def get_config() -> ContainerConfig:
    return ContainerConfig.from_env()


@lru_cache
def get_container() -> AgentContainer:
    return build_container(get_config())
