"""Notification envelope and publisher protocol.

The escrow core never renders messages. It publishes a DealNotification
carrying the deal identity, the intended recipients and enough context for
the notification layer to compose a message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from multisig_escrow.domain.enums import NotificationEvent


@dataclass(frozen=True)
class DealNotification:
    event: NotificationEvent
    deal_id: str | None
    recipients: tuple[str, ...]
    context: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "event": self.event.value,
            "deal_id": self.deal_id,
            "recipients": list(self.recipients),
            "context": self.context,
            "occurred_at": self.occurred_at.isoformat(),
        }


@runtime_checkable
class NotificationPublisher(Protocol):
    async def publish(self, notification: DealNotification) -> None:
        """Deliver a notification. Implementations must not raise on transport errors."""
        ...
