"""Intent REST API routes.

Routes:
    POST   /api/v1/intents                    Post an intent (auto-proposes matches)
    GET    /api/v1/intents                    List intents
    GET    /api/v1/intents/{id}               Get one intent
    GET    /api/v1/intents/{id}/candidates    Ranked eligible agents
    GET    /api/v1/intents/{id}/matches       Matches for the intent
    POST   /api/v1/intents/{id}/matches       Apply with an agent
    POST   /api/v1/intents/{id}/cancel        Cancel (refunds a funded escrow)
    POST   /api/v1/intents/{id}/repost        Re-post a cancelled/expired intent
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter annotations at runtime

from fastapi import APIRouter, Depends

from intent_exchange.api.deps import get_actor, get_coordinator
from intent_exchange.domain.enums import IntentStatus, MatchStatus  # noqa: TC001
from intent_exchange.schemas.marketplace import (
    AgentResponse,
    ApplyRequest,
    CancelIntentRequest,
    CandidateResponse,
    CreateIntentRequest,
    IntentResponse,
    MatchResponse,
    RepostIntentRequest,
)
from intent_exchange.services.intent_coordinator import IntentCoordinator  # noqa: TC001

router = APIRouter(prefix="/api/v1/intents", tags=["Intents"])


@router.post("", response_model=IntentResponse, status_code=201, summary="Post an intent")
async def create_intent(
    request: CreateIntentRequest,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> IntentResponse:
    intent = await coordinator.create_intent(
        owner_id=actor,
        title=request.title,
        required_capabilities=request.required_capabilities,
        budget_amount=request.budget_amount,
        budget_asset=request.budget_asset,
        payer_address=request.payer_address,
        description=request.description,
        tags=request.tags,
        deadline=request.deadline,
    )
    return IntentResponse.model_validate(intent)


@router.get("", response_model=list[IntentResponse], summary="List intents")
async def list_intents(
    owner_id: str | None = None,
    status: IntentStatus | None = None,
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> list[IntentResponse]:
    intents = await coordinator.list_intents(owner_id, status)
    return [IntentResponse.model_validate(i) for i in intents]


@router.get("/{intent_id}", response_model=IntentResponse, summary="Get an intent")
async def get_intent(
    intent_id: uuid.UUID,
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> IntentResponse:
    return IntentResponse.model_validate(await coordinator.get_intent(intent_id))


@router.get(
    "/{intent_id}/candidates",
    response_model=list[CandidateResponse],
    summary="Rank eligible agents",
)
async def find_candidates(
    intent_id: uuid.UUID,
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> list[CandidateResponse]:
    candidates = await coordinator.matching.find_candidates(intent_id)
    return [
        CandidateResponse(
            agent=AgentResponse.model_validate(c.agent),
            overlap=c.overlap,
            match_score=c.match_score,
        )
        for c in candidates
    ]


@router.get("/{intent_id}/matches", response_model=list[MatchResponse], summary="List matches")
async def list_matches(
    intent_id: uuid.UUID,
    status: MatchStatus | None = None,
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> list[MatchResponse]:
    matches = await coordinator.matching.list_matches(intent_id, status)
    return [MatchResponse.model_validate(m) for m in matches]


@router.post(
    "/{intent_id}/matches",
    response_model=MatchResponse,
    status_code=201,
    summary="Apply to an intent with an agent",
)
async def apply(
    intent_id: uuid.UUID,
    request: ApplyRequest,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> MatchResponse:
    match = await coordinator.matching.apply(intent_id, request.agent_id, actor)
    return MatchResponse.model_validate(match)


@router.post("/{intent_id}/cancel", response_model=IntentResponse, summary="Cancel an intent")
async def cancel_intent(
    intent_id: uuid.UUID,
    request: CancelIntentRequest,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> IntentResponse:
    intent = await coordinator.cancel(intent_id, actor, request.reason)
    return IntentResponse.model_validate(intent)


@router.post(
    "/{intent_id}/repost",
    response_model=IntentResponse,
    status_code=201,
    summary="Re-post a cancelled or expired intent",
)
async def repost_intent(
    intent_id: uuid.UUID,
    request: RepostIntentRequest,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> IntentResponse:
    intent = await coordinator.repost(intent_id, actor, deadline=request.deadline)
    return IntentResponse.model_validate(intent)
