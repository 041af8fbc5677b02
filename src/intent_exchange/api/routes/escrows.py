"""Escrow REST API routes.

Routes:
    GET    /api/v1/escrows/pending           Escrows needing operator attention
    GET    /api/v1/escrows/{id}              Get escrow details
    GET    /api/v1/escrows/{id}/ledger       Ledger entries, oldest first
    GET    /api/v1/escrows/{id}/reconcile    Ledger integrity check
    POST   /api/v1/escrows/{id}/resume       Finish an interrupted transfer (operator)
    POST   /api/v1/escrows/{id}/resolve      Resolve a dispute (operator)

Operator routes authenticate with the X-Operator-Key header (see deps.get_operator).
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter annotations at runtime

from fastapi import APIRouter, Depends

from intent_exchange.api.deps import get_coordinator, get_operator
from intent_exchange.logging_config import get_logger
from intent_exchange.schemas.marketplace import (
    EscrowResponse,
    IntentResponse,
    LedgerEntryResponse,
    ReconciliationResponse,
    ResolveDisputeRequest,
)
from intent_exchange.services.intent_coordinator import IntentCoordinator  # noqa: TC001

router = APIRouter(prefix="/api/v1/escrows", tags=["Escrows"])
logger = get_logger(__name__)


@router.get("/pending", response_model=list[EscrowResponse], summary="List stuck escrows")
async def list_pending(
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> list[EscrowResponse]:
    return [EscrowResponse.model_validate(e) for e in await coordinator.escrows.list_pending()]


@router.get("/{escrow_id}", response_model=EscrowResponse, summary="Get an escrow")
async def get_escrow(
    escrow_id: uuid.UUID,
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> EscrowResponse:
    return EscrowResponse.model_validate(await coordinator.escrows.get(escrow_id))


@router.get(
    "/{escrow_id}/ledger",
    response_model=list[LedgerEntryResponse],
    summary="Get the escrow ledger",
)
async def get_ledger(
    escrow_id: uuid.UUID,
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> list[LedgerEntryResponse]:
    entries = await coordinator.escrows.get_ledger(escrow_id)
    return [LedgerEntryResponse.model_validate(e) for e in entries]


@router.get(
    "/{escrow_id}/reconcile",
    response_model=ReconciliationResponse,
    summary="Check the ledger against the escrow status",
)
async def reconcile(
    escrow_id: uuid.UUID,
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> ReconciliationResponse:
    """Returns 500 with kind ``inconsistent`` when the ledger disagrees."""
    report = await coordinator.ledger.reconcile(escrow_id)
    return ReconciliationResponse(**report.to_dict())


@router.post(
    "/{escrow_id}/resume",
    response_model=EscrowResponse,
    summary="Resume a transfer",
    dependencies=[Depends(get_operator)],
)
async def resume_pending(
    escrow_id: uuid.UUID,
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> EscrowResponse:
    escrow = await coordinator.escrows.resume_pending(escrow_id)
    logger.info("escrow.resumed_by_operator", escrow_id=escrow_id, status=escrow.status)
    return EscrowResponse.model_validate(escrow)


@router.post("/{escrow_id}/resolve", response_model=IntentResponse, summary="Resolve a dispute")
async def resolve_dispute(
    escrow_id: uuid.UUID,
    request: ResolveDisputeRequest,
    operator: str = Depends(get_operator),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> IntentResponse:
    intent = await coordinator.resolve_dispute(escrow_id, request.resolution, operator)
    return IntentResponse.model_validate(intent)
