"""Pydantic schemas for the marketplace API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models to keep clean boundaries between the API and
database layers.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves these annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from intent_exchange.domain.enums import DisputeResolution  # noqa: TC001

if TYPE_CHECKING:
    from intent_exchange.services.ledger_service import PaymentRecord

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class RegisterAgentRequest(BaseModel):
    """Request body for registering an agent."""

    name: str = Field(..., min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=5000)
    capabilities: list[str] = Field(
        default_factory=list,
        description="Capability tags; normalized to lower case",
        examples=[["python", "scraping"]],
    )
    wallet_address: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Settlement address payouts are sent to",
    )


class UpdateAgentRequest(BaseModel):
    """Partial update of an agent's profile. Omitted fields are unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=5000)
    capabilities: list[str] | None = None
    wallet_address: str | None = Field(default=None, min_length=1, max_length=128)
    enabled: bool | None = Field(
        default=None,
        description="False disables an idle agent, True re-enables a disabled one",
    )


class CreateIntentRequest(BaseModel):
    """Request body for posting an intent."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    required_capabilities: list[str] = Field(default_factory=list)
    tags: list[str] = Field(
        default_factory=list,
        description="Preferred capabilities; used for ranking, not filtering",
    )
    budget_amount: Decimal = Field(..., gt=0, decimal_places=6, examples=[100])
    budget_asset: str = Field(..., min_length=1, max_length=16, examples=["USDC"])
    payer_address: str = Field(..., min_length=1, max_length=128)
    deadline: datetime | None = None


class ApplyRequest(BaseModel):
    """An agent owner proposes their agent for an intent."""

    agent_id: uuid.UUID


class CancelIntentRequest(BaseModel):
    reason: str = Field(default="", max_length=2000)


class RepostIntentRequest(BaseModel):
    deadline: datetime | None = None


class DisputeRequest(BaseModel):
    """Request body for raising a dispute on an in-progress match."""

    reason: str = Field(..., min_length=1, max_length=2000)


class ProgressRequest(BaseModel):
    """Progress report from the agent owner on accepted, in-progress work."""

    progress: int = Field(..., ge=0, le=100, description="Percent complete")
    notes: str | None = Field(default=None, max_length=5000)


class ResolveDisputeRequest(BaseModel):
    resolution: DisputeResolution


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class AgentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: str
    name: str
    description: str | None
    capabilities: list[str]
    wallet_address: str
    status: str
    version: int
    created_at: datetime
    updated_at: datetime


class IntentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: str
    title: str
    description: str | None
    required_capabilities: list[str]
    tags: list[str]
    budget_amount: Decimal
    budget_asset: str
    status: str
    deadline: datetime | None
    close_reason: str | None
    reposted_from_id: uuid.UUID | None
    version: int
    created_at: datetime
    closed_at: datetime | None


class MatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    intent_id: uuid.UUID
    agent_id: uuid.UUID | None
    status: str
    match_score: int
    proposed_by: str
    progress: int
    progress_notes: str | None
    progress_updated_at: datetime | None
    version: int
    created_at: datetime


class CandidateResponse(BaseModel):
    """An eligible agent with its ranking data."""

    agent: AgentResponse
    overlap: int
    match_score: int


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    intent_id: uuid.UUID
    match_id: uuid.UUID
    status: str
    amount: Decimal
    asset: str
    pending_status: str | None
    last_error: str | None
    dispute_reason: str | None
    version: int
    created_at: datetime
    funded_at: datetime | None
    resolved_at: datetime | None


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_id: uuid.UUID
    kind: str
    amount: Decimal
    external_reference: str
    idempotency_key: str
    created_at: datetime


class PaymentResponse(BaseModel):
    """A ledger entry with the deal it belongs to."""

    entry: LedgerEntryResponse
    escrow_id: uuid.UUID
    escrow_status: str
    asset: str
    intent_id: uuid.UUID
    intent_title: str
    payer_id: str
    agent_id: uuid.UUID | None
    agent_name: str | None

    @classmethod
    def from_record(cls, record: PaymentRecord) -> PaymentResponse:
        return cls(
            entry=LedgerEntryResponse.model_validate(record.entry),
            escrow_id=record.escrow_id,
            escrow_status=record.escrow_status,
            asset=record.asset,
            intent_id=record.intent_id,
            intent_title=record.intent_title,
            payer_id=record.payer_id,
            agent_id=record.agent_id,
            agent_name=record.agent_name,
        )


class ReconciliationResponse(BaseModel):
    escrow_id: str
    stored_status: str
    expected_statuses: list[str]
    entry_count: int
    consistent: bool
    problems: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    pending_escrows: int | None = None
