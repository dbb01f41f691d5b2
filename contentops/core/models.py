"""Core data models shared across runtime components."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Dict, Optional, Tuple


class AgentState(Enum):
    """Lifecycle states for an agent hosted by the container."""

    CREATED = auto()
    INITIALISING = auto()
    RUNNING = auto()
    DEGRADED = auto()
    STOPPING = auto()
    STOPPED = auto()
    FAILED = auto()


# Permitted transitions; anything else is a programming error.
TRANSITIONS: Dict[AgentState, Tuple[AgentState, ...]] = {
    AgentState.CREATED: (AgentState.INITIALISING,),
    AgentState.INITIALISING: (AgentState.RUNNING, AgentState.FAILED),
    AgentState.RUNNING: (AgentState.STOPPING, AgentState.DEGRADED, AgentState.FAILED),
    AgentState.DEGRADED: (AgentState.RUNNING, AgentState.STOPPING, AgentState.FAILED),
    AgentState.STOPPING: (AgentState.STOPPED, AgentState.FAILED),
    AgentState.STOPPED: (),
    AgentState.FAILED: (),
}


@dataclass(slots=True)
class AgentCounters:
    commands_handled: int = 0
    commands_failed: int = 0
    commands_retried: int = 0
    commands_requeued: int = 0
    duplicates_skipped: int = 0
    dead_lettered: int = 0
    events_handled: int = 0
    events_published: int = 0
    events_buffered: int = 0
    events_dropped: int = 0


@dataclass(slots=True)
class AgentStatus:
    """Observable status of a hosted agent."""

    state: AgentState = AgentState.CREATED
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    degraded_since: Optional[float] = None
    counters: AgentCounters = field(default_factory=AgentCounters)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.name,
            "last_error": self.last_error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "counters": asdict(self.counters),
        }


@dataclass(frozen=True, slots=True)
class AgentDescriptor:
    """Immutable description of an agent built from configuration."""

    name: str
    modules: Tuple[str, ...]
    module_settings: Dict[str, Dict[str, Any]]
    command_table: Dict[str, str]
    subscription_table: Dict[str, str]
    workers: int = 4
    event_workers: int = 1
    command_timeouts: Dict[str, float] = field(default_factory=dict)
    default_timeout: float = 30.0
    event_buffer: int = 100
    requeue_delay: float = 0.5

    def timeout_for(self, command_type: str) -> float:
        return self.command_timeouts.get(command_type, self.default_timeout)
