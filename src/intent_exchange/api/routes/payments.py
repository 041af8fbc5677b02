"""Payment history routes.

Routes:
    GET    /api/v1/payments                     Movements on the caller's intents
    GET    /api/v1/payments/agents/{agent_id}   Movements on an agent's deals (owner only)
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter annotations at runtime

from fastapi import APIRouter, Depends

from intent_exchange.api.deps import get_actor, get_coordinator
from intent_exchange.schemas.marketplace import PaymentResponse
from intent_exchange.services.intent_coordinator import IntentCoordinator  # noqa: TC001

router = APIRouter(prefix="/api/v1/payments", tags=["Payments"])


@router.get("", response_model=list[PaymentResponse], summary="My payments")
async def list_my_payments(
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> list[PaymentResponse]:
    records = await coordinator.ledger.payments_for_payer(actor)
    return [PaymentResponse.from_record(r) for r in records]


@router.get(
    "/agents/{agent_id}",
    response_model=list[PaymentResponse],
    summary="Payments for one of my agents",
)
async def list_agent_payments(
    agent_id: uuid.UUID,
    actor: str = Depends(get_actor),
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> list[PaymentResponse]:
    records = await coordinator.ledger.payments_for_agent(agent_id, actor)
    return [PaymentResponse.from_record(r) for r in records]
