"""HTTP API exposing agent status, restarts and dead letters."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from contentops.agents.runtime import AgentRuntime
from contentops.core.errors import NotFound
from contentops.orchestration.container import AgentContainer
from contentops.runtime import get_container

router = APIRouter(prefix="/agents", tags=["agents"])


class ModuleResponse(BaseModel):
    name: str
    state: str
    last_error: Optional[str]


class AgentResponse(BaseModel):
    name: str
    state: str
    last_error: Optional[str]
    started_at: Optional[str]
    modules: List[ModuleResponse]
    counters: Dict[str, int]
    buffered_events: int

    @classmethod
    def from_runtime(cls, runtime: AgentRuntime) -> "AgentResponse":
        return cls.model_validate(runtime.snapshot())


class DeadLetterResponse(BaseModel):
    envelope_id: str
    kind: str
    failure_reason: str
    attempt: int
    last_error: Dict[str, Any]
    dead_lettered_at: datetime
    envelope: Dict[str, Any]


def _runtime(container: AgentContainer, name: str) -> AgentRuntime:
    try:
        return container.agent(name)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc


@router.get("", response_model=List[AgentResponse])
async def list_agents(container: AgentContainer = Depends(get_container)) -> List[AgentResponse]:
    return [AgentResponse.from_runtime(runtime) for runtime in container.agents]


@router.get("/{name}", response_model=AgentResponse)
async def get_agent(name: str, container: AgentContainer = Depends(get_container)) -> AgentResponse:
    return AgentResponse.from_runtime(_runtime(container, name))


@router.post("/{name}/restart", response_model=AgentResponse)
async def restart_agent(name: str, container: AgentContainer = Depends(get_container)) -> AgentResponse:
    _runtime(container, name)
    runtime = await container.restart_agent(name)
    return AgentResponse.from_runtime(runtime)


@router.get("/{name}/dead-letters", response_model=List[DeadLetterResponse])
async def list_dead_letters(name: str, container: AgentContainer = Depends(get_container)) -> List[DeadLetterResponse]:
    _runtime(container, name)
    return [
        DeadLetterResponse(envelope_id=record.envelope_id, **record.model_dump())
        for record in container.bus.dead_letters(name)
    ]


@router.post("/{name}/dead-letters/{envelope_id}/replay", status_code=status.HTTP_202_ACCEPTED)
async def replay_dead_letter(
    name: str,
    envelope_id: str,
    container: AgentContainer = Depends(get_container),
) -> Dict[str, str]:
    _runtime(container, name)
    try:
        await container.bus.replay_dead_letter(name, envelope_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
    return {"envelope_id": envelope_id, "status": "replayed"}
