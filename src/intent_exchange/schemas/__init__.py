"""Pydantic API schemas."""

from intent_exchange.schemas.marketplace import (
    AgentResponse,
    ApplyRequest,
    CancelIntentRequest,
    CandidateResponse,
    CreateIntentRequest,
    DisputeRequest,
    EscrowResponse,
    HealthResponse,
    IntentResponse,
    LedgerEntryResponse,
    MatchResponse,
    ReconciliationResponse,
    RegisterAgentRequest,
    RepostIntentRequest,
    ResolveDisputeRequest,
    UpdateAgentRequest,
)

__all__ = [
    "AgentResponse",
    "ApplyRequest",
    "CancelIntentRequest",
    "CandidateResponse",
    "CreateIntentRequest",
    "DisputeRequest",
    "EscrowResponse",
    "HealthResponse",
    "IntentResponse",
    "LedgerEntryResponse",
    "MatchResponse",
    "ReconciliationResponse",
    "RegisterAgentRequest",
    "RepostIntentRequest",
    "ResolveDisputeRequest",
    "UpdateAgentRequest",
]
