"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Every status change goes through DealRepository.transition(), which issues
a conditional UPDATE ... WHERE status IN (expected) and reports whether it
applied. Two monitors (or a monitor and a user action) racing on the same
deal therefore produce exactly one winner.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from multisig_escrow.domain.enums import (
    ACTIVE_STATUSES,
    DealStatus,
    DisputeStatus,
    ReconciliationStatus,
)
from multisig_escrow.infrastructure.database.orm_models import (
    Counter,
    Deal,
    DealEvent,
    Dispute,
    MultisigWallet,
    ReconciliationTask,
    SessionRecord,
    Transaction,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from multisig_escrow.domain.enums import (
        DisputeDecision,
        EventType,
        SessionPurpose,
        TransactionType,
    )


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _match_columns(stmt: Any, conditions: dict[str, Any]) -> Any:
    for column, expected in conditions.items():
        attr = getattr(Deal, column)
        stmt = stmt.where(attr.is_(None) if expected is None else attr == expected)
    return stmt


class DealRepository:
    """Data access for deals."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, deal: Deal) -> Deal:
        """Insert a new deal."""
        self._session.add(deal)
        await self._session.flush()
        return deal

    async def get_by_id(self, deal_pk: uuid.UUID) -> Deal | None:
        result = await self._session.execute(select(Deal).where(Deal.id == deal_pk))
        return result.scalar_one_or_none()

    async def get_by_deal_id(self, deal_id: str) -> Deal | None:
        """Fetch a deal by its human-readable id (DL-000001)."""
        result = await self._session.execute(select(Deal).where(Deal.deal_id == deal_id))
        return result.scalar_one_or_none()

    async def list_deals(
        self,
        status: DealStatus | None = None,
        party_id: str | None = None,
        limit: int = 50,
    ) -> list[Deal]:
        """List deals newest first, optionally filtered by status and party."""
        stmt = select(Deal)
        if status is not None:
            stmt = stmt.where(Deal.status == status.value)
        if party_id is not None:
            stmt = stmt.where(or_(Deal.buyer_id == party_id, Deal.seller_id == party_id))
        stmt = stmt.order_by(Deal.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_status(
        self,
        statuses: Iterable[DealStatus],
        limit: int | None = None,
    ) -> list[Deal]:
        """Fetch deals in any of `statuses`, oldest first."""
        stmt = (
            select(Deal)
            .where(Deal.status.in_([s.value for s in statuses]))
            .order_by(Deal.created_at.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_past_deadline(
        self,
        statuses: Iterable[DealStatus],
        now: datetime,
        limit: int | None = None,
    ) -> list[Deal]:
        """Deals in `statuses` whose deadline has passed, earliest deadline first."""
        stmt = (
            select(Deal)
            .where(Deal.status.in_([s.value for s in statuses]))
            .where(Deal.deadline <= now)
            .order_by(Deal.deadline.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_locked_unnotified(self, limit: int | None = None) -> list[Deal]:
        """Locked deals whose deal.locked notification was never claimed."""
        stmt = (
            select(Deal)
            .where(Deal.status == DealStatus.LOCKED.value)
            .where(Deal.deposit_notification_sent.is_(False))
            .order_by(Deal.deposit_detected_at.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_active_for_party(self, party_id: str) -> Deal | None:
        """Return an active deal the party participates in, if any."""
        result = await self._session.execute(
            select(Deal)
            .where(Deal.status.in_([s.value for s in ACTIVE_STATUSES]))
            .where(or_(Deal.buyer_id == party_id, Deal.seller_id == party_id))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_open_between(
        self,
        buyer_id: str,
        seller_id: str,
        description: str,
    ) -> Deal | None:
        """Return a non-terminal deal with the same parties and description."""
        terminal = [s.value for s in DealStatus if s.is_terminal]
        result = await self._session.execute(
            select(Deal)
            .where(Deal.buyer_id == buyer_id)
            .where(Deal.seller_id == seller_id)
            .where(Deal.description == description)
            .where(Deal.status.not_in(terminal))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        deal: Deal,
        expected: Iterable[DealStatus],
        new_status: DealStatus,
        where: dict[str, Any] | None = None,
        **values: Any,
    ) -> bool:
        """Conditionally move `deal` to `new_status` (call AFTER state machine validation).

        The UPDATE only applies while the stored status is still one of
        `expected` and every column in `where` matches. Extra column values
        are written in the same statement.

        Returns:
            True if this call performed the transition, False if another
            writer got there first.
        """
        stmt = (
            update(Deal)
            .where(Deal.id == deal.id)
            .where(Deal.status.in_([s.value for s in expected]))
        )
        stmt = _match_columns(stmt, where or {})
        result = await self._session.execute(
            stmt.values(status=new_status.value, updated_at=_utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1
        await self._session.refresh(deal)
        return applied

    async def update_where(
        self,
        deal: Deal,
        conditions: dict[str, Any],
        **values: Any,
    ) -> bool:
        """Conditionally update columns of `deal` when every column in `conditions` matches."""
        stmt = _match_columns(update(Deal).where(Deal.id == deal.id), conditions)
        result = await self._session.execute(
            stmt.values(updated_at=_utcnow(), **values).execution_options(
                synchronize_session=False
            )
        )
        applied = result.rowcount == 1
        await self._session.refresh(deal)
        return applied

    async def claim_deposit_notification(self, deal: Deal) -> bool:
        """Set deposit_notification_sent exactly once. True for the caller that set it."""
        return await self.update_where(
            deal,
            {"deposit_notification_sent": False},
            deposit_notification_sent=True,
        )


class WalletRepository:
    """Data access for per-deal multisig wallets."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, wallet: MultisigWallet) -> MultisigWallet:
        self._session.add(wallet)
        await self._session.flush()
        return wallet

    async def get_by_deal(self, deal_pk: uuid.UUID) -> MultisigWallet | None:
        """Fetch the wallet for a deal. Key material is read fresh on every call."""
        result = await self._session.execute(
            select(MultisigWallet)
            .where(MultisigWallet.deal_pk == deal_pk)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_address(self, address: str) -> MultisigWallet | None:
        result = await self._session.execute(
            select(MultisigWallet).where(MultisigWallet.address == address)
        )
        return result.scalar_one_or_none()

    async def mark_activated(self, wallet: MultisigWallet, tx_hash: str | None) -> None:
        wallet.activated = True
        wallet.activation_tx_hash = tx_hash
        await self._session.flush()


class TransactionRepository:
    """Data access for the append-only transaction ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        deal_pk: uuid.UUID,
        tx_type: TransactionType,
        asset: str,
        amount: Decimal,
        tx_hash: str,
        from_address: str | None = None,
        to_address: str | None = None,
        explorer_url: str | None = None,
    ) -> Transaction:
        """Append a confirmed transfer. Only confirmed transfers are ever recorded."""
        row = Transaction(
            deal_pk=deal_pk,
            type=tx_type.value,
            asset=asset,
            amount=amount,
            tx_hash=tx_hash,
            from_address=from_address,
            to_address=to_address,
            status="confirmed",
            explorer_url=explorer_url,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_hash(self, tx_hash: str) -> Transaction | None:
        result = await self._session.execute(
            select(Transaction).where(Transaction.tx_hash == tx_hash)
        )
        return result.scalar_one_or_none()

    async def get_by_deal(self, deal_pk: uuid.UUID) -> list[Transaction]:
        """Fetch all transactions for a deal in chronological order."""
        result = await self._session.execute(
            select(Transaction)
            .where(Transaction.deal_pk == deal_pk)
            .order_by(Transaction.created_at.asc())
        )
        return list(result.scalars().all())


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        deal_pk: uuid.UUID,
        event_type: EventType,
        old_status: DealStatus | None,
        new_status: DealStatus,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> DealEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = DealEvent(
            deal_pk=deal_pk,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_deal(self, deal_pk: uuid.UUID) -> list[DealEvent]:
        """Fetch all events for a deal in chronological order."""
        result = await self._session.execute(
            select(DealEvent)
            .where(DealEvent.deal_pk == deal_pk)
            .order_by(DealEvent.created_at.asc())
        )
        return list(result.scalars().all())


class DisputeRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: Dispute) -> Dispute:
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_open(self, deal_pk: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(
            select(Dispute)
            .where(Dispute.deal_pk == deal_pk)
            .where(Dispute.status == DisputeStatus.OPEN.value)
        )
        return result.scalar_one_or_none()

    async def get_latest(self, deal_pk: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(
            select(Dispute)
            .where(Dispute.deal_pk == deal_pk)
            .order_by(Dispute.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def resolve(
        self,
        dispute: Dispute,
        decision: DisputeDecision,
        resolved_by: str,
    ) -> Dispute:
        dispute.status = DisputeStatus.RESOLVED.value
        dispute.decision = decision.value
        dispute.resolved_by = resolved_by
        dispute.resolved_at = _utcnow()
        await self._session.flush()
        return dispute


class SessionRepository:
    """TTL-scoped records keyed by (actor_id, purpose).

    An expired row is indistinguishable from a missing one: get() returns
    None and put() overwrites it.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _get_row(
        self,
        actor_id: str,
        purpose: SessionPurpose,
        for_update: bool = False,
    ) -> SessionRecord | None:
        stmt = (
            select(SessionRecord)
            .where(SessionRecord.actor_id == actor_id)
            .where(SessionRecord.purpose == purpose.value)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(
        self,
        actor_id: str,
        purpose: SessionPurpose,
        for_update: bool = False,
    ) -> dict | None:
        """Return the live session payload, or None when absent or expired."""
        row = await self._get_row(actor_id, purpose, for_update=for_update)
        if row is None or row.expires_at <= _utcnow():
            return None
        return dict(row.data)

    async def put(
        self,
        actor_id: str,
        purpose: SessionPurpose,
        data: dict,
        ttl: timedelta,
    ) -> None:
        """Create or replace a session, resetting its expiry to now + ttl."""
        expires_at = _utcnow() + ttl
        row = await self._get_row(actor_id, purpose)
        if row is None:
            row = SessionRecord(
                actor_id=actor_id,
                purpose=purpose.value,
                data=data,
                expires_at=expires_at,
            )
            self._session.add(row)
        else:
            row.data = data
            row.expires_at = expires_at
        await self._session.flush()

    async def update_data(self, actor_id: str, purpose: SessionPurpose, data: dict) -> None:
        """Replace the payload of a live session without extending its expiry."""
        row = await self._get_row(actor_id, purpose)
        if row is not None:
            row.data = data
            await self._session.flush()

    async def delete(self, actor_id: str, purpose: SessionPurpose) -> None:
        await self._session.execute(
            delete(SessionRecord)
            .where(SessionRecord.actor_id == actor_id)
            .where(SessionRecord.purpose == purpose.value)
        )

    async def purge_expired(self) -> int:
        """Delete every expired session. Returns the number of rows removed."""
        result = await self._session.execute(
            delete(SessionRecord).where(SessionRecord.expires_at <= _utcnow())
        )
        return result.rowcount or 0


class ReconciliationRepository:
    """Data access for follow-up commission transfers."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, task: ReconciliationTask) -> ReconciliationTask:
        self._session.add(task)
        await self._session.flush()
        return task

    async def get_by_id(self, task_id: uuid.UUID) -> ReconciliationTask | None:
        result = await self._session.execute(
            select(ReconciliationTask).where(ReconciliationTask.id == task_id)
        )
        return result.scalar_one_or_none()

    async def get_pending(self, limit: int | None = None) -> list[ReconciliationTask]:
        stmt = (
            select(ReconciliationTask)
            .where(ReconciliationTask.status == ReconciliationStatus.PENDING.value)
            .order_by(ReconciliationTask.created_at.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_deal(self, deal_pk: uuid.UUID) -> list[ReconciliationTask]:
        result = await self._session.execute(
            select(ReconciliationTask).where(ReconciliationTask.deal_pk == deal_pk)
        )
        return list(result.scalars().all())

    async def mark_done(self, task: ReconciliationTask, tx_hash: str) -> None:
        task.status = ReconciliationStatus.DONE.value
        task.tx_hash = tx_hash
        task.attempts += 1
        task.last_error = None
        await self._session.flush()

    async def record_failure(
        self,
        task: ReconciliationTask,
        error: str,
        max_attempts: int,
    ) -> None:
        task.attempts += 1
        task.last_error = error
        if task.attempts >= max_attempts:
            task.status = ReconciliationStatus.FAILED.value
        await self._session.flush()


class CounterRepository:
    """Named monotonic counters."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def next_value(self, name: str) -> int:
        """Atomically increment and return the counter, creating it at 1."""
        value = await self._increment(name)
        if value is not None:
            return value
        try:
            async with self._session.begin_nested():
                self._session.add(Counter(name=name, value=1))
            return 1
        except IntegrityError:
            # Another writer created the row between our UPDATE and INSERT.
            value = await self._increment(name)
            if value is None:
                raise
            return value

    async def _increment(self, name: str) -> int | None:
        result = await self._session.execute(
            update(Counter)
            .where(Counter.name == name)
            .values(value=Counter.value + 1)
            .returning(Counter.value)
        )
        return result.scalar_one_or_none()
