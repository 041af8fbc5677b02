"""Agent registry REST API routes.

Routes:
    POST   /api/v1/agents           Register an agent
    GET    /api/v1/agents           List agents (optionally by owner)
    GET    /api/v1/agents/{id}      Get one agent
    PATCH  /api/v1/agents/{id}      Edit profile / enable / disable
    DELETE /api/v1/agents/{id}      Delete an agent with no active matches
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter annotations at runtime

from fastapi import APIRouter, Depends, Response

from intent_exchange.api.deps import get_actor, get_agent_service
from intent_exchange.domain.enums import AgentStatus
from intent_exchange.schemas.marketplace import (
    AgentResponse,
    RegisterAgentRequest,
    UpdateAgentRequest,
)
from intent_exchange.services.agent_service import AgentService  # noqa: TC001

router = APIRouter(prefix="/api/v1/agents", tags=["Agents"])


@router.post("", response_model=AgentResponse, status_code=201, summary="Register an agent")
async def register_agent(
    request: RegisterAgentRequest,
    actor: str = Depends(get_actor),
    svc: AgentService = Depends(get_agent_service),
) -> AgentResponse:
    agent = await svc.register_agent(
        owner_id=actor,
        name=request.name,
        capabilities=request.capabilities,
        wallet_address=request.wallet_address,
        description=request.description,
    )
    return AgentResponse.model_validate(agent)


@router.get("", response_model=list[AgentResponse], summary="List agents")
async def list_agents(
    owner_id: str | None = None,
    svc: AgentService = Depends(get_agent_service),
) -> list[AgentResponse]:
    return [AgentResponse.model_validate(a) for a in await svc.list_agents(owner_id)]


@router.get("/{agent_id}", response_model=AgentResponse, summary="Get an agent")
async def get_agent(
    agent_id: uuid.UUID,
    svc: AgentService = Depends(get_agent_service),
) -> AgentResponse:
    return AgentResponse.model_validate(await svc.get_agent(agent_id))


@router.patch("/{agent_id}", response_model=AgentResponse, summary="Update an agent")
async def update_agent(
    agent_id: uuid.UUID,
    request: UpdateAgentRequest,
    actor: str = Depends(get_actor),
    svc: AgentService = Depends(get_agent_service),
) -> AgentResponse:
    """Profile edits apply first, then the optional enable/disable toggle."""
    agent = await svc.update_profile(
        agent_id,
        actor,
        name=request.name,
        description=request.description,
        capabilities=request.capabilities,
        wallet_address=request.wallet_address,
    )
    if request.enabled is True and agent.status == AgentStatus.DISABLED:
        agent = await svc.enable_agent(agent_id, actor)
    elif request.enabled is False and agent.status != AgentStatus.DISABLED:
        agent = await svc.disable_agent(agent_id, actor)
    return AgentResponse.model_validate(agent)


@router.delete("/{agent_id}", status_code=204, summary="Delete an agent")
async def delete_agent(
    agent_id: uuid.UUID,
    actor: str = Depends(get_actor),
    svc: AgentService = Depends(get_agent_service),
) -> Response:
    await svc.delete_agent(agent_id, actor)
    return Response(status_code=204)
