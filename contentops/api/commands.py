"""Command endpoint: publish work to an agent, optionally waiting for the reply."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from contentops.core.envelope import CommandEnvelope
from contentops.core.errors import CoreError, ErrorClass, NotFound, Timeout, as_core_error
from contentops.orchestration.container import AgentContainer
from contentops.runtime import get_container

router = APIRouter(prefix="/agents", tags=["commands"])


class CommandRequest(BaseModel):
    type: str = Field(..., description="Command type handled by the agent")
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = Field(default=None, description="Propagated to every resulting event")
    wait: bool = Field(default=False, description="Wait for the handler's reply")
    timeout_ms: int = Field(default=30_000, gt=0)


class CommandResponse(BaseModel):
    id: str
    correlation_id: str
    status: str
    result: Any = None


def _http_error(error: CoreError) -> HTTPException:
    if isinstance(error, Timeout):
        code = status.HTTP_504_GATEWAY_TIMEOUT
    elif isinstance(error, NotFound):
        code = status.HTTP_404_NOT_FOUND
    elif error.error_class is ErrorClass.TRANSIENT:
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif error.error_class is ErrorClass.INTERNAL:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return HTTPException(status_code=code, detail=error.to_dict())


@router.post("/{name}/commands", response_model=CommandResponse)
async def send_command(
    name: str,
    request: CommandRequest,
    response: Response,
    container: AgentContainer = Depends(get_container),
) -> CommandResponse:
    try:
        container.agent(name)
        fields: Dict[str, Any] = {"type": request.type, "target_agent": name, "payload": request.payload}
        if request.correlation_id:
            fields["correlation_id"] = request.correlation_id
        envelope = CommandEnvelope(**fields)
        if not request.wait:
            await container.bus.publish_command(envelope)
            response.status_code = status.HTTP_202_ACCEPTED
            return CommandResponse(id=envelope.id, correlation_id=envelope.correlation_id, status="accepted")
        reply = await container.bus.request(envelope, timeout=request.timeout_ms / 1000)
    except Exception as exc:  # noqa: BLE001
        raise _http_error(as_core_error(exc)) from exc
    return CommandResponse(
        id=envelope.id,
        correlation_id=reply.correlation_id,
        status="completed",
        result=reply.payload.get("result"),
    )
