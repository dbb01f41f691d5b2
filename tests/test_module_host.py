"""Module settings, capability checks, resource provisioning and invocation."""
from __future__ import annotations

import pytest

from contentops.core.errors import CapabilityMissing, CapabilityUnavailable, ConfigError, NotFound
from contentops.core.module_host import Collection, ModuleHost, ModuleSpec, ModuleState, ResourceLedger
from contentops.core.registry import CapabilityRegistry
from support import JOURNAL, KeptStorage


class CountingStorage(KeptStorage):
    def __init__(self) -> None:
        super().__init__()
        self.ensured = []

    async def ensure_collection(self, name, *, unique=(), indexes=()) -> None:
        self.ensured.append(name)
        await super().ensure_collection(name, unique=unique, indexes=indexes)


async def _registry(storage=None) -> CapabilityRegistry:
    registry = CapabilityRegistry()
    if storage is not None:
        registry.register("storage", lambda registry: storage)
    await registry.initialise_all()
    return registry


def test_settings_defaults_and_unknown_keys() -> None:
    assert JOURNAL.validate_settings(None).prefix == ""
    assert JOURNAL.validate_settings({"prefix": "> "}).prefix == "> "
    with pytest.raises(ConfigError):
        JOURNAL.validate_settings({"colour": "blue"})


def test_resources_require_storage() -> None:
    with pytest.raises(ConfigError):
        ModuleSpec(name="broken", factory=lambda settings, capabilities: None, resources=(Collection("things"),))


@pytest.mark.anyio
async def test_lifecycle_and_invoke() -> None:
    storage = CountingStorage()
    registry = await _registry(storage)
    host = ModuleHost(JOURNAL, {"prefix": "> "}, agent="notes", registry=registry, resources=ResourceLedger())

    await host.initialise()
    assert host.state is ModuleState.INITIALISED
    with pytest.raises(CapabilityUnavailable):
        await host.invoke("record", "too early")

    await host.start()
    assert host.instance.started
    await host.invoke("record", "hello")
    assert host.instance.entries == ["> hello"]
    with pytest.raises(NotFound):
        await host.invoke("erase")

    await host.stop()
    assert host.state is ModuleState.STOPPED
    assert host.instance.stopped
    assert host.status() == {"name": "journal", "state": "STOPPED", "last_error": None}


@pytest.mark.anyio
async def test_resources_are_ensured_once_per_process() -> None:
    storage = CountingStorage()
    registry = await _registry(storage)
    ledger = ResourceLedger()
    for agent in ("notes", "archive"):
        await ModuleHost(JOURNAL, None, agent=agent, registry=registry, resources=ledger).initialise()
    assert storage.ensured == ["notes"]
    assert "notes" in ledger


@pytest.mark.anyio
async def test_missing_capability_fails_initialisation() -> None:
    registry = await _registry()
    host = ModuleHost(JOURNAL, None, agent="notes", registry=registry, resources=ResourceLedger())
    with pytest.raises(CapabilityMissing):
        await host.initialise()
    assert host.state is ModuleState.FAILED
    assert "storage" in host.last_error


@pytest.mark.anyio
async def test_factory_errors_fail_the_module() -> None:
    registry = await _registry(KeptStorage())
    host = ModuleHost(JOURNAL, {"fail_on_init": True}, agent="notes", registry=registry, resources=ResourceLedger())
    with pytest.raises(RuntimeError):
        await host.initialise()
    assert host.state is ModuleState.FAILED
    await host.stop()
    assert host.state is ModuleState.FAILED
