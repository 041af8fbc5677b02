"""SQLAlchemy 2.0 ORM models for the intent exchange.

Five tables:
    1. agents          - Workers and their capability tags.
    2. intents         - Units of work posted by requesters.
    3. matches         - Proposed / accepted pairings of one intent to one agent.
    4. escrows         - Held-funds accounts, one per accepted match.
    5. ledger_entries  - Append-only record of every funds movement.

Design decisions:
    - UUIDs as primary keys.
    - Decimal amounts (Numeric(18, 6)), never floats.
    - Every mutable table carries a ``version`` column wired as the mapper's
      version_id_col: each UPDATE is conditional on the version it read, and a
      lost race surfaces as StaleDataError.
    - Partial unique indexes enforce "one live match per (intent, agent)" and
      "one accepted match per intent" at the database level.
    - ledger_entries is append-only: no UPDATE or DELETE at the application level.
    - JSON columns become JSONB on PostgreSQL and plain JSON elsewhere.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")

_LIVE_MATCH = text("status IN ('proposed', 'accepted')")
_ACCEPTED_MATCH = text("status = 'accepted'")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. agents
# ---------------------------------------------------------------------------
class Agent(Base):
    """An autonomous worker owned by a user."""

    __tablename__ = "agents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Owning user (identity from the auth collaborator)",
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    capabilities: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Normalized capability tags",
    )
    wallet_address: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Opaque settlement address, validated by the settlement rail",
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="idle")

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint(
            "status IN ('idle', 'matched', 'busy', 'disabled')",
            name="ck_agent_valid_status",
        ),
        Index("idx_agent_status", "status"),
        Index("idx_agent_owner", "owner_id"),
    )

    def __repr__(self) -> str:
        return f"<Agent id={self.id} status={self.status} v{self.version}>"


# ---------------------------------------------------------------------------
# 2. intents
# ---------------------------------------------------------------------------
class Intent(Base):
    """A unit of work a requester wants performed."""

    __tablename__ = "intents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    required_capabilities: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    tags: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Preferred (not required) capabilities used for ranking",
    )

    budget_amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    budget_asset: Mapped[str] = mapped_column(String(16), nullable=False)
    payer_address: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Requester's settlement address funds are drawn from",
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    close_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reposted_from_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("intents.id", ondelete="SET NULL"),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'matched', 'in_progress', 'completed', 'cancelled', 'expired')",
            name="ck_intent_valid_status",
        ),
        CheckConstraint("budget_amount > 0", name="ck_intent_positive_budget"),
        Index("idx_intent_status", "status"),
        Index("idx_intent_owner", "owner_id"),
        Index("idx_intent_deadline", "deadline"),
    )

    def __repr__(self) -> str:
        return f"<Intent id={self.id} status={self.status} v{self.version}>"


# ---------------------------------------------------------------------------
# 3. matches
# ---------------------------------------------------------------------------
class Match(Base):
    """A pairing of one intent with one agent."""

    __tablename__ = "matches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    intent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("intents.id", ondelete="CASCADE"), nullable=False
    )
    agent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("agents.id", ondelete="SET NULL"),
        nullable=True,
        comment="Null once the agent is deleted; the match is kept as history",
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="proposed")
    match_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    proposed_by: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="SYSTEM for engine proposals, the agent owner for applications",
    )
    progress: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Percent complete reported by the agent owner while work is in progress",
    )
    progress_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    progress_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint(
            "status IN ('proposed', 'accepted', 'rejected', 'expired', 'superseded')",
            name="ck_match_valid_status",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="ck_match_progress_range"),
        Index(
            "uq_match_live_pair",
            "intent_id",
            "agent_id",
            unique=True,
            postgresql_where=_LIVE_MATCH,
            sqlite_where=_LIVE_MATCH,
        ),
        Index(
            "uq_match_one_accepted",
            "intent_id",
            unique=True,
            postgresql_where=_ACCEPTED_MATCH,
            sqlite_where=_ACCEPTED_MATCH,
        ),
        Index("idx_match_agent", "agent_id"),
        Index("idx_match_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Match id={self.id} intent={self.intent_id} agent={self.agent_id} {self.status}>"


# ---------------------------------------------------------------------------
# 4. escrows
# ---------------------------------------------------------------------------
class Escrow(Base):
    """Funds held against an accepted match."""

    __tablename__ = "escrows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    intent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("intents.id", ondelete="RESTRICT"), nullable=False
    )
    match_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("matches.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="created")
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    asset: Mapped[str] = mapped_column(String(16), nullable=False)
    payer_address: Mapped[str] = mapped_column(String(128), nullable=False)
    payee_address: Mapped[str] = mapped_column(String(128), nullable=False)

    pending_status: Mapped[str | None] = mapped_column(
        String(16),
        nullable=True,
        default=None,
        comment="Target status of a gateway call in flight (or stuck)",
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    disputed_by: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'funded', 'released', 'refunded', 'disputed')",
            name="ck_escrow_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_escrow_positive_amount"),
        Index("idx_escrow_status", "status"),
        Index("idx_escrow_intent", "intent_id"),
        Index("idx_escrow_pending", "pending_status"),
    )

    def __repr__(self) -> str:
        return f"<Escrow id={self.id} status={self.status} amount={self.amount} {self.asset}>"


# ---------------------------------------------------------------------------
# 5. ledger_entries (Append-Only)
# ---------------------------------------------------------------------------
class LedgerEntry(Base):
    """Immutable record of one funds movement against an escrow.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    external_reference: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Settlement rail transaction id",
    )
    idempotency_key: Mapped[str] = mapped_column(
        String(160),
        nullable=False,
        comment="Escrow operation key this entry was written under",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "kind IN ('fund', 'release', 'refund', 'fee')",
            name="ck_ledger_valid_kind",
        ),
        CheckConstraint("amount > 0", name="ck_ledger_positive_amount"),
        UniqueConstraint("idempotency_key", "kind", name="uq_ledger_key_kind"),
        Index("idx_ledger_escrow", "escrow_id"),
    )

    def __repr__(self) -> str:
        return f"<LedgerEntry escrow={self.escrow_id} {self.kind} {self.amount} ref={self.external_reference}>"


for _model in (Agent, Intent, Match, Escrow):
    event.listen(_model, "before_update", _set_updated_at)
