"""Guarded deal transitions shared by every service and monitor.

A transition is always:
    1. validated by the DealStateMachine (illegal -> InvalidStateTransitionError)
    2. written with a conditional UPDATE keyed on the status just validated
    3. recorded in the append-only deal_events table, only if it applied
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from multisig_escrow.domain.enums import DealStatus
from multisig_escrow.domain.exceptions import DealNotFoundError, InvalidStateTransitionError
from multisig_escrow.domain.state_machine import validate_transition
from multisig_escrow.infrastructure.database.repositories import (
    DealRepository,
    EventRepository,
)
from multisig_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from multisig_escrow.domain.enums import EventType
    from multisig_escrow.infrastructure.database.orm_models import Deal

logger = get_logger(__name__)


def next_status(current: str, event_name: str) -> DealStatus:
    """Status `event_name` leads to from `current`, or InvalidStateTransitionError."""
    try:
        return DealStatus(validate_transition(current, event_name))
    except (TransitionNotAllowed, ValueError) as err:
        raise InvalidStateTransitionError(current, event_name) from err


class DealLifecycle:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self.deals = DealRepository(session)
        self.events = EventRepository(session)

    async def get_deal_or_raise(self, deal_id: str) -> Deal:
        deal = await self.deals.get_by_deal_id(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        return deal

    async def fire(
        self,
        deal: Deal,
        event_name: str,
        event_type: EventType,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
        where: dict | None = None,
        **values: object,
    ) -> bool:
        """Validate and apply a transition. Returns False if another writer won the race.

        `where` adds column conditions the stored row must still satisfy.
        """
        old_status = DealStatus(deal.status)
        new_status = next_status(deal.status, event_name)

        applied = await self.deals.transition(deal, [old_status], new_status, where, **values)
        if not applied:
            logger.info(
                "deal.transition_lost",
                deal_id=deal.deal_id,
                transition=event_name,
                expected=old_status.value,
                actual=deal.status,
            )
            return False

        await self.events.record(
            deal_pk=deal.id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata=metadata,
        )
        logger.info(
            "deal.transitioned",
            deal_id=deal.deal_id,
            transition=event_name,
            old_status=old_status.value,
            new_status=new_status.value,
            actor=actor,
        )
        return True

    async def fire_or_raise(
        self,
        deal: Deal,
        event_name: str,
        event_type: EventType,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
        where: dict | None = None,
        **values: object,
    ) -> None:
        """Like fire(), but a lost race is reported as an invalid transition."""
        expected = deal.status
        if not await self.fire(deal, event_name, event_type, actor, metadata, where, **values):
            raise InvalidStateTransitionError(deal.status or expected, event_name)

    async def record_event(
        self,
        deal: Deal,
        event_type: EventType,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> None:
        """Audit an event that does not change the status."""
        status = DealStatus(deal.status)
        await self.events.record(
            deal_pk=deal.id,
            event_type=event_type,
            old_status=status,
            new_status=status,
            actor=actor,
            metadata=metadata,
        )
