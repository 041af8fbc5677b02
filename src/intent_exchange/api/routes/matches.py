"""Match REST API routes.

Routes:
    GET    /api/v1/matches/{id}             Get one match
    POST   /api/v1/matches/{id}/accept      Intent owner accepts (opens + funds escrow)
    POST   /api/v1/matches/{id}/reject      Either party rejects a proposal
    POST   /api/v1/matches/{id}/fund        Retry funding the escrow
    POST   /api/v1/matches/{id}/start       Agent owner starts work
    POST   /api/v1/matches/{id}/complete    Agent owner completes (releases escrow)
    POST   /api/v1/matches/{id}/dispute     Either party disputes in-progress work
    POST   /api/v1/matches/{id}/progress    Agent owner reports progress on in-progress work
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter annotations at runtime

from fastapi import APIRouter, Depends

from intent_exchange.api.deps import get_actor, get_coordinator
from intent_exchange.schemas.marketplace import (
    DisputeRequest,
    EscrowResponse,
    IntentResponse,
    MatchResponse,
    ProgressRequest,
)
from intent_exchange.services.intent_coordinator import IntentCoordinator  # noqa: TC001

router = APIRouter(prefix="/api/v1/matches", tags=["Matches"])


@router.get("/{match_id}", response_model=MatchResponse, summary="Get a match")
async def get_match(
    match_id: uuid.UUID,
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> MatchResponse:
    return MatchResponse.model_validate(await coordinator.matching.get_match(match_id))


@router.post("/{match_id}/accept", response_model=MatchResponse, summary="Accept a match")
async def accept_match(
    match_id: uuid.UUID,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> MatchResponse:
    """Accept the proposal, supersede the others, open and fund the escrow."""
    return MatchResponse.model_validate(await coordinator.accept_match(match_id, actor))


@router.post("/{match_id}/reject", response_model=MatchResponse, summary="Reject a match")
async def reject_match(
    match_id: uuid.UUID,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> MatchResponse:
    return MatchResponse.model_validate(await coordinator.matching.reject_match(match_id, actor))


@router.post("/{match_id}/fund", response_model=EscrowResponse, summary="Retry escrow funding")
async def fund_escrow(
    match_id: uuid.UUID,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> EscrowResponse:
    return EscrowResponse.model_validate(await coordinator.fund_escrow(match_id, actor))


@router.post("/{match_id}/start", response_model=IntentResponse, summary="Start work")
async def start_work(
    match_id: uuid.UUID,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> IntentResponse:
    return IntentResponse.model_validate(await coordinator.start_work(match_id, actor))


@router.post("/{match_id}/complete", response_model=IntentResponse, summary="Complete work")
async def complete_work(
    match_id: uuid.UUID,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> IntentResponse:
    return IntentResponse.model_validate(await coordinator.complete_work(match_id, actor))


@router.post("/{match_id}/dispute", response_model=EscrowResponse, summary="Dispute work")
async def dispute(
    match_id: uuid.UUID,
    request: DisputeRequest,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> EscrowResponse:
    escrow = await coordinator.dispute(match_id, actor, request.reason)
    return EscrowResponse.model_validate(escrow)


@router.post("/{match_id}/progress", response_model=MatchResponse, summary="Report progress")
async def report_progress(
    match_id: uuid.UUID,
    request: ProgressRequest,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> MatchResponse:
    """Agent owner records percent complete; completion still goes through /complete."""
    match = await coordinator.report_progress(match_id, actor, request.progress, request.notes)
    return MatchResponse.model_validate(match)
