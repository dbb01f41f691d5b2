"""Test doubles and a small ``notes`` agent used across the suite."""
from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from contentops.agents.blueprint import AgentBlueprint, HandlerContext
from contentops.config import ContainerConfig
from contentops.core.envelope import EventEnvelope
from contentops.core.errors import Timeout, ValidationError
from contentops.core.module_host import CapabilitySet, Collection, ModuleSpec
from contentops.orchestration.container import AgentContainer
from contentops.runtime import build_container
from contentops.services.log import LoggerFactory
from contentops.services.storage import InMemoryStorage


class ManualClock:
    """Monotonic time only moves when told to; wall time follows it from now."""

    def __init__(self) -> None:
        self.offset = 0.0

    def now(self) -> datetime:
        return datetime.now(timezone.utc) + timedelta(seconds=self.offset)

    def monotonic(self) -> float:
        return 1_000.0 + self.offset

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.offset += seconds


class ScriptedAI:
    """Replays scripted replies and errors, then answers with ``reply``."""

    def __init__(self, *script: Any, reply: str = "Add an FAQ section\nLink to related posts", delay: float = 0.0) -> None:
        self.script = deque(script)
        self.reply = reply
        self.delay = delay
        self.calls: List[Any] = []
        self.active = 0
        self.active_at_close: Optional[int] = None

    async def generate(self, request: Any) -> str:
        self.calls.append(request)
        self.active += 1
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.script:
                item = self.script.popleft()
                if isinstance(item, BaseException):
                    raise item
                return item
            return self.reply
        finally:
            self.active -= 1

    def healthy(self) -> bool:
        return True

    async def close(self) -> None:
        self.active_at_close = self.active


class KeptStorage(InMemoryStorage):
    """In-memory storage that stays readable after the container releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.releases = 0

    async def close(self) -> None:
        self.releases += 1


class JournalSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    prefix: str = ""
    fail_on_init: bool = False


class Journal:
    def __init__(self, settings: JournalSettings, capabilities: CapabilitySet) -> None:
        if settings.fail_on_init:
            raise RuntimeError("journal refused to initialise")
        self.settings = settings
        self.entries: List[str] = []
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    async def record(self, text: str, sleep: float = 0.0) -> None:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if sleep:
                await asyncio.sleep(sleep)
            self.entries.append(self.settings.prefix + text)
        finally:
            self.active -= 1


JOURNAL = ModuleSpec(
    name="journal",
    factory=Journal,
    settings=JournalSettings,
    requires=("storage",),
    resources=(Collection("notes", unique=(("key",),)),),
    operations=("record",),
)


class AddNote(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str
    key: Optional[str] = None
    sleep: float = 0.0
    fail: Optional[Literal["transient", "permanent", "internal"]] = None


notes = AgentBlueprint("notes", modules=[JOURNAL], required_modules=("journal",))


@notes.command("add_note", payload=AddNote, requires=("storage",))
async def add_note(ctx: HandlerContext, payload: AddNote) -> Dict[str, Any]:
    ctx.emit("note_added", {"text": payload.text})
    if payload.fail == "transient":
        raise Timeout("journal disk is slow")
    if payload.fail == "permanent":
        raise ValidationError("note rejected")
    if payload.fail == "internal":
        raise RuntimeError("journal bug")
    if payload.key:
        async with ctx.lock(payload.key):
            await ctx.invoke("journal", "record", payload.text, payload.sleep)
    else:
        await ctx.invoke("journal", "record", payload.text, payload.sleep)
    return {"text": payload.text}


@notes.command("ask", requires=("ai",))
async def ask(ctx: HandlerContext, payload: Dict[str, Any]) -> str:
    return await ctx.ai.generate({"messages": [{"role": "user", "content": payload.get("question", "?")}]})


@notes.on_event("feed.*")
async def on_feed(ctx: HandlerContext, event: EventEnvelope) -> None:
    if event.payload.get("fail"):
        raise ValidationError("feed item rejected")
    await ctx.invoke("journal", "record", f"feed:{event.name}")
    ctx.send("notes", "add_note", {"text": f"from {event.type}"})


def notes_config(**overrides: Any) -> ContainerConfig:
    data: Dict[str, Any] = {
        "agents": [{"name": "notes", "modules": [{"name": "journal"}], "requeue_delay_ms": 10}],
        "retry": {"max_attempts": 3, "backoff_ms_base": 1, "backoff_cap_ms": 5},
        "supervisor": {"interval_ms": 60_000, "degraded_timeout_ms": 60_000},
        "messaging": {"heartbeat_ms": 60_000},
        "shutdown_grace_ms": 1_000,
    }
    data.update(overrides)
    return ContainerConfig.from_mapping(data)


def make_container(
    config: ContainerConfig,
    *,
    clock: Optional[ManualClock] = None,
    storage: Optional[InMemoryStorage] = None,
    ai: Optional[ScriptedAI] = None,
    blueprints: Optional[Dict[str, AgentBlueprint]] = None,
    capabilities: Optional[Dict[str, Callable[[Any], Any]]] = None,
) -> AgentContainer:
    clock = clock or ManualClock()
    storage = storage if storage is not None else KeptStorage()
    ai = ai or ScriptedAI()
    factories: Dict[str, Callable[[Any], Any]] = {
        "logger": lambda registry: LoggerFactory(configure=False),
        "clock": lambda registry: clock,
        "storage": lambda registry: storage,
        "ai": lambda registry: ai,
    }
    factories.update(capabilities or {})
    if blueprints is None and any(agent.name == "notes" for agent in config.agents):
        blueprints = {"notes": notes}
    return build_container(config, capabilities=factories, blueprints=blueprints)


async def tap(container: AgentContainer, pattern: str, consumer: str = "tap") -> List[EventEnvelope]:
    """Collect every event matching ``pattern`` published from now on."""
    seen: List[EventEnvelope] = []

    async def record(delivery: Any) -> None:
        seen.append(EventEnvelope.from_json(delivery.body))

    await container.bus.subscribe_events(pattern, record, consumer=consumer)
    return seen


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
