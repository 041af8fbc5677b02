"""Status-change events emitted for the notification collaborator.

Every Intent/Match/Escrow (and Agent) status transition produces one event.
Fan-out, inbox storage and read state belong to the notification layer.
Delivery is best-effort: a notifier must not raise into the core.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from intent_exchange.domain.enums import EntityType


@dataclass(frozen=True)
class StatusChangeEvent:
    """One status transition of one entity."""

    entity_type: EntityType
    entity_id: str
    old_status: str | None
    new_status: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Serialize for the wire (JSON-safe)."""
        return {
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "occurred_at": self.occurred_at.isoformat(),
            "metadata": self.metadata,
        }


@runtime_checkable
class StatusNotifier(Protocol):
    """Sink for status-change events."""

    async def publish(self, event: StatusChangeEvent) -> None: ...
