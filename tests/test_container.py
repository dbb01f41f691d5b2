"""Container build validation, start rollback, supervision, restart and stop."""
from __future__ import annotations

import asyncio

import pytest

from contentops.core.envelope import CommandEnvelope
from contentops.core.errors import CapabilityInitFailed, ConfigError, InternalError, NotFound
from contentops.core.message_bus import command_queue
from contentops.core.models import AgentState
from contentops.orchestration.container import AgentContainer
from support import KeptStorage, ManualClock, make_container, notes, notes_config, wait_until

TWO_AGENTS = [
    {"name": "notes", "modules": [{"name": "journal"}]},
    {"name": "archive", "modules": [{"name": "journal", "settings": {"prefix": "archived: "}}]},
]


@pytest.mark.parametrize(
    "agents",
    [
        [{"name": "ghost", "modules": []}],
        [{"name": "notes", "modules": [{"name": "journal"}, {"name": "spellcheck"}]}],
        [{"name": "notes", "modules": []}],
        [{"name": "notes", "modules": [{"name": "journal", "settings": {"colour": "blue"}}]}],
    ],
)
def test_build_rejects_invalid_agent_graphs(agents) -> None:
    with pytest.raises(ConfigError):
        make_container(notes_config(agents=agents))


def test_build_rejects_unknown_capabilities() -> None:
    with pytest.raises(ConfigError) as info:
        AgentContainer.build(
            notes_config(),
            blueprints={"notes": notes},
            capabilities={"storage": lambda registry: KeptStorage()},
        )
    assert "ai" in info.value.message


def test_invalid_configuration_is_a_config_error() -> None:
    with pytest.raises(ConfigError):
        notes_config(agents=[{"name": "notes"}, {"name": "notes"}])
    with pytest.raises(ConfigError):
        notes_config(retry={"max_attempts": 0})


@pytest.mark.anyio
async def test_start_and_stop_in_order() -> None:
    storage = KeptStorage()
    container = make_container(
        notes_config(agents=TWO_AGENTS), storage=storage, blueprints={"notes": notes, "archive": notes}
    )
    assert [runtime.state for runtime in container.agents] == [AgentState.CREATED, AgentState.CREATED]

    await container.start()
    assert container.started
    assert [runtime.state for runtime in container.agents] == [AgentState.RUNNING, AgentState.RUNNING]
    assert container.health().status == "OK"
    assert container.health().to_dict()["agents"] == {"notes": "RUNNING", "archive": "RUNNING"}

    await container.bus.publish_command(CommandEnvelope(type="add_note", target_agent="archive", payload={"text": "x"}))
    archive = container.agent("archive").module("journal").instance
    await wait_until(lambda: archive.entries == ["archived: x"])

    await container.stop()
    await container.stop()
    assert not container.started
    assert [runtime.state for runtime in container.agents] == [AgentState.STOPPED, AgentState.STOPPED]
    assert storage.releases == 1
    with pytest.raises(NotFound):
        container.agent("ghost")


@pytest.mark.anyio
async def test_agent_start_failure_rolls_everything_back() -> None:
    agents = [
        {"name": "notes", "modules": [{"name": "journal"}]},
        {"name": "archive", "modules": [{"name": "journal", "settings": {"fail_on_init": True}}]},
    ]
    storage = KeptStorage()
    container = make_container(
        notes_config(agents=agents), storage=storage, blueprints={"notes": notes, "archive": notes}
    )

    with pytest.raises(RuntimeError):
        await container.start()

    assert not container.started
    assert storage.releases == 1
    assert [runtime.state for runtime in container.agents] == [AgentState.CREATED, AgentState.CREATED]
    assert not container.registry.is_initialised("storage")


@pytest.mark.anyio
async def test_capability_failure_leaves_container_startable() -> None:
    attempts = []
    storage = KeptStorage()

    def flaky_storage(registry):
        attempts.append(1)
        if len(attempts) == 1:
            raise ConnectionError("database not ready")
        return storage

    container = make_container(notes_config(), capabilities={"storage": flaky_storage})
    with pytest.raises(CapabilityInitFailed):
        await container.start()
    assert container.agent("notes").state is AgentState.CREATED

    await container.start()
    assert container.agent("notes").state is AgentState.RUNNING
    await container.stop()


@pytest.mark.anyio
async def test_stop_shares_one_grace_deadline() -> None:
    container = make_container(notes_config(agents=TWO_AGENTS), blueprints={"notes": notes, "archive": notes})
    await container.start()
    for agent in ("notes", "archive"):
        await container.bus.publish_command(
            CommandEnvelope(type="add_note", target_agent=agent, payload={"text": "slow", "sleep": 5.0})
        )
    journals = [container.agent(name).module("journal").instance for name in ("notes", "archive")]
    await wait_until(lambda: all(journal.active == 1 for journal in journals))

    loop = asyncio.get_running_loop()
    began = loop.time()
    await container.stop(grace=0.2)
    assert loop.time() - began < 1.0

    for agent in ("notes", "archive"):
        assert container.bus.broker.depth(command_queue(agent)) == 1
        assert container.agent(agent).status.counters.commands_handled == 0


@pytest.mark.anyio
async def test_supervisor_degrades_recovers_and_fails_agents() -> None:
    clock = ManualClock()
    config = notes_config(
        circuit={"failure_threshold": 2, "cooldown_ms": 120_000},
        supervisor={"interval_ms": 60_000, "degraded_timeout_ms": 60_000},
    )
    container = make_container(config, clock=clock)
    await container.start()
    runtime = container.agent("notes")
    breaker = container.registry.breaker("ai")

    breaker.record_failure()
    breaker.record_failure()
    await container.supervise_once()
    assert runtime.state is AgentState.DEGRADED
    assert container.health().status == "DEGRADED"

    clock.advance(121)
    await container.supervise_once()
    assert runtime.state is AgentState.RUNNING
    assert container.health().status == "OK"

    assert breaker.allow()
    breaker.record_failure()
    await container.supervise_once()
    assert runtime.state is AgentState.DEGRADED
    clock.advance(61)
    await container.supervise_once()
    assert runtime.state is AgentState.FAILED
    assert container.health().status == "FAILED"

    fresh = await container.restart_agent("notes")
    assert fresh is not runtime
    assert fresh.state is AgentState.RUNNING
    assert container.agent("notes") is fresh
    assert container.health().status == "DEGRADED"
    clock.advance(60)
    assert container.health().status == "OK"

    await container.bus.publish_command(
        CommandEnvelope(type="add_note", target_agent="notes", payload={"text": "back"}, issued_at=clock.now())
    )
    await wait_until(lambda: fresh.module("journal").instance.entries == ["back"])
    await container.stop()


@pytest.mark.anyio
async def test_restart_requires_running_container() -> None:
    container = make_container(notes_config())
    with pytest.raises(InternalError):
        await container.restart_agent("notes")
