"""SQLAlchemy 2.0 ORM models for the multisig escrow engine.

Tables:
    1. deals                 One escrow agreement between a buyer and a seller.
    2. multisig_wallets      The per-deal 2-of-3 wallet and its encrypted key material.
    3. transactions          Append-only record of confirmed on-chain transfers.
    4. deal_events           Append-only audit log of every state transition.
    5. disputes              Disputes opened on a deal and the arbiter decision.
    6. sessions              TTL records keyed by (actor_id, purpose).
    7. reconciliation_tasks  Follow-up work for commission transfers that failed.
    8. counters              Named monotonic counters (human-readable deal ids).

Design decisions:
    - UUIDs as primary keys, plus a human-readable `deal_id` (DL-000001).
    - Decimal for asset amounts (no floating point rounding errors).
    - JSON columns (JSONB on PostgreSQL) for the cost ledger, wallet permissions
      and session payloads.
    - Timestamps are always timezone-aware UTC, also on SQLite.
    - CHECK constraint on status to prevent invalid enum values at DB level.
    - transactions and deal_events are append-only at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from multisig_escrow.domain.enums import DealStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as an aware UTC datetime.

    SQLite drops tzinfo on the way in; this restores it on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001, ANN201
        if value is not None:
            if value.tzinfo is None:
                value = value.replace(tzinfo=UTC)
            value = value.astimezone(UTC)
        return value

    def process_result_value(self, value, dialect):  # noqa: ANN001, ANN201
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in DealStatus)


# ---------------------------------------------------------------------------
# 1. deals
# ---------------------------------------------------------------------------
class Deal(Base):
    """An escrow agreement between a buyer and a seller."""

    __tablename__ = "deals"

    # --- Identity ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        unique=True,
        comment="Human-readable deal id, e.g. DL-000001",
    )
    unique_key: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="sha256 of parties, description and creation time",
    )

    # --- Parties ---
    creator_role: Mapped[str] = mapped_column(String(10), nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_address: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Buyer settlement address (refunds)",
    )
    seller_address: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Seller settlement address (releases)",
    )

    # --- Terms ---
    product_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    asset: Mapped[str] = mapped_column(String(10), nullable=False, default="USDT")
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    commission: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    commission_type: Mapped[str] = mapped_column(String(10), nullable=False)
    deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # --- Escrow ---
    multisig_address: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
        comment="Derived per deal, never reused",
    )
    deposit_tx_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    deposit_detected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    actual_deposit_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    deposit_notification_sent: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Set once deal.locked has been published",
    )

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=DealStatus.CREATED.value,
        comment="Current lifecycle state (guarded by DealStateMachine)",
    )
    pending_key_validation: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
        default=None,
        comment="ValidationType currently gated, or null",
    )

    # --- Audit ---
    operational_costs: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    # --- Relationships ---
    wallet: Mapped[MultisigWallet | None] = relationship(
        "MultisigWallet",
        back_populates="deal",
        uselist=False,
        lazy="selectin",
    )
    transactions: Mapped[list[Transaction]] = relationship(
        "Transaction",
        back_populates="deal",
        order_by="Transaction.created_at.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="ck_deal_valid_status"),
        CheckConstraint("amount > 0", name="ck_deal_positive_amount"),
        CheckConstraint("commission >= 0", name="ck_deal_commission_non_negative"),
        CheckConstraint(
            "commission_type IN ('buyer', 'seller', 'split')",
            name="ck_deal_commission_type",
        ),
        Index("idx_deal_status", "status"),
        Index("idx_deal_status_deadline", "status", "deadline"),
        Index("idx_deal_buyer_status", "buyer_id", "status"),
        Index("idx_deal_seller_status", "seller_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Deal {self.deal_id} status={self.status} amount={self.amount} {self.asset}>"


# ---------------------------------------------------------------------------
# 2. multisig_wallets
# ---------------------------------------------------------------------------
class MultisigWallet(Base):
    """2-of-3 wallet (buyer, seller, arbiter) owned by exactly one deal.

    All key material is Fernet-encrypted. Party secrets are the values the
    key validation gate compares against.
    """

    __tablename__ = "multisig_wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_pk: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    address: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    encrypted_private_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Custodial co-signing key (Fernet)",
    )
    buyer_public_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seller_public_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    arbiter_public_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    permissions: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    encrypted_buyer_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_seller_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    activated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    activation_tx_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    deal: Mapped[Deal] = relationship("Deal", back_populates="wallet")

    def __repr__(self) -> str:
        return f"<MultisigWallet {self.address} deal={self.deal_pk}>"


# ---------------------------------------------------------------------------
# 3. transactions (Append-Only)
# ---------------------------------------------------------------------------
class Transaction(Base):
    """A confirmed on-chain transfer. Failures are never recorded here."""

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_pk: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    asset: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    from_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    to_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="confirmed")
    explorer_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    deal: Mapped[Deal] = relationship("Deal", back_populates="transactions")

    __table_args__ = (
        CheckConstraint(
            "type IN ('deposit', 'release', 'refund', 'fee')",
            name="ck_transaction_type",
        ),
        Index("idx_transaction_deal", "deal_pk"),
    )

    def __repr__(self) -> str:
        return f"<Transaction {self.type} {self.amount} {self.asset} tx={self.tx_hash}>"


# ---------------------------------------------------------------------------
# 4. deal_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class DealEvent(Base):
    """Immutable audit record of every state transition in a deal's lifecycle.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "deal_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_pk: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str] = mapped_column(String(32), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="Who triggered this event (party id, arbiter id or SYSTEM)",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_event_deal", "deal_pk"),
        Index("idx_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<DealEvent type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# 5. disputes
# ---------------------------------------------------------------------------
class Dispute(Base):
    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_pk: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    opened_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    decision: Mapped[str | None] = mapped_column(String(32), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_dispute_deal", "deal_pk"),)


# ---------------------------------------------------------------------------
# 6. sessions (TTL)
# ---------------------------------------------------------------------------
class SessionRecord(Base):
    """Ephemeral state keyed by (actor_id, purpose). Absence is always valid."""

    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    purpose: Mapped[str] = mapped_column(String(40), nullable=False)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("actor_id", "purpose", name="uq_session_actor_purpose"),
        Index("idx_session_expires_at", "expires_at"),
    )


# ---------------------------------------------------------------------------
# 7. reconciliation_tasks
# ---------------------------------------------------------------------------
class ReconciliationTask(Base):
    """A commission transfer that failed after the principal was confirmed."""

    __tablename__ = "reconciliation_tasks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_pk: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False, default="commission_transfer")
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    asset: Mapped[str] = mapped_column(String(10), nullable=False)
    to_address: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (Index("idx_reconciliation_status", "status"),)


# ---------------------------------------------------------------------------
# 8. counters
# ---------------------------------------------------------------------------
class Counter(Base):
    __tablename__ = "counters"

    name: Mapped[str] = mapped_column(String(32), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
event.listen(Deal, "before_update", _set_updated_at)
event.listen(SessionRecord, "before_update", _set_updated_at)
event.listen(ReconciliationTask, "before_update", _set_updated_at)
