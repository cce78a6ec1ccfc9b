"""Database infrastructure: engine, ORM models, and repositories."""

from multisig_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    close_db,
    create_tables,
    get_async_session,
    get_session_factory,
    init_db,
)
from multisig_escrow.infrastructure.database.orm_models import (
    Base,
    Counter,
    Deal,
    DealEvent,
    Dispute,
    MultisigWallet,
    ReconciliationTask,
    SessionRecord,
    Transaction,
)
from multisig_escrow.infrastructure.database.repositories import (
    CounterRepository,
    DealRepository,
    DisputeRepository,
    EventRepository,
    ReconciliationRepository,
    SessionRepository,
    TransactionRepository,
    WalletRepository,
)

__all__ = [
    "Base",
    "Counter",
    "Deal",
    "DealEvent",
    "Dispute",
    "MultisigWallet",
    "ReconciliationTask",
    "SessionRecord",
    "Transaction",
    "CounterRepository",
    "DealRepository",
    "DisputeRepository",
    "EventRepository",
    "ReconciliationRepository",
    "SessionRepository",
    "TransactionRepository",
    "WalletRepository",
    "build_engine",
    "build_session_factory",
    "create_tables",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
