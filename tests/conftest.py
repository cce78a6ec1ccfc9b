"""Shared test fixtures for the multisig escrow test suite.

Provides:
    - A per-test SQLite database (aiosqlite) with the full schema
    - An EscrowRuntime on the simulated ledger and resource market
    - A recording notification publisher
    - EscrowHarness: drives deals through their lifecycle, one session per step
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy import event

from multisig_escrow.config import Settings
from multisig_escrow.domain.commission import CommissionBreakdown
from multisig_escrow.domain.enums import CommissionType, PartyRole
from multisig_escrow.infrastructure.crypto import KeyVault
from multisig_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    create_tables,
)
from multisig_escrow.infrastructure.database.repositories import (
    DealRepository,
    EventRepository,
    TransactionRepository,
)
from multisig_escrow.infrastructure.ledger.simulated import (
    SimulatedLedger,
    SimulatedResourceMarket,
)
from multisig_escrow.monitors.deposit_monitor import DepositMonitor
from multisig_escrow.services.deal_service import DealService
from multisig_escrow.services.key_validation import KeyValidationGate
from multisig_escrow.services.runtime import EscrowRuntime

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from multisig_escrow.domain.notifications import DealNotification
    from multisig_escrow.infrastructure.database.orm_models import Deal, Transaction
    from multisig_escrow.services.key_validation import GateOutcome

SERVICE_KEY = "5e" * 32
ARBITER_ID = "arbiter-1"
BUYER_ID = "buyer-1"
SELLER_ID = "seller-1"


# ---------------------------------------------------------------------------
# Settings & Runtime
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_env="development",
        database_url="sqlite+aiosqlite://",
        ledger_backend="simulated",
        wallet_encryption_key=Fernet.generate_key().decode(),
        service_wallet_private_key=SERVICE_KEY,
        arbiter_ids=ARBITER_ID,
        min_deal_amount=Decimal("50"),
        deposit_batch_size=1,
        deadline_batch_size=1,
        deposit_alert_threshold=2,
        transfer_settle_seconds=0,
        reconciliation_max_attempts=2,
    )


class RecordingPublisher:
    """NotificationPublisher that keeps everything it is handed."""

    def __init__(self) -> None:
        self.notifications: list[DealNotification] = []

    async def publish(self, notification: DealNotification) -> None:
        self.notifications.append(notification)

    def events(self, deal_id: str | None = None) -> list[str]:
        return [
            n.event.value
            for n in self.notifications
            if deal_id is None or n.deal_id == deal_id
        ]

    def last(self, event: str) -> DealNotification:
        matches = [n for n in self.notifications if n.event.value == event]
        assert matches, f"no {event} notification published"
        return matches[-1]


@pytest.fixture
def ledger() -> SimulatedLedger:
    return SimulatedLedger(energy_estimate=145_000, energy_per_transfer=65_000)


@pytest.fixture
def market(ledger: SimulatedLedger) -> SimulatedResourceMarket:
    return SimulatedResourceMarket(ledger, enabled=False)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def runtime(
    settings: Settings,
    ledger: SimulatedLedger,
    market: SimulatedResourceMarket,
    publisher: RecordingPublisher,
) -> EscrowRuntime:
    ledger.credit(ledger.address_from_key(SERVICE_KEY), Decimal("1000"), "TRX")
    return EscrowRuntime(
        settings=settings,
        ledger=ledger,
        market=market,
        publisher=publisher,
        vault=KeyVault(settings.wallet_encryption_key),
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:  # noqa: ANN001
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN.
    # IMMEDIATE takes the write lock up front so concurrent sessions wait, not fail.
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):  # noqa: ANN001, ANN202
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):  # noqa: ANN001, ANN202
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------


@dataclass
class DealSetup:
    deal_id: str
    buyer_secret: str | None = None
    seller_secret: str | None = None
    multisig_address: str = ""
    breakdown: CommissionBreakdown | None = None
    extra: dict = field(default_factory=dict)

    def secret_for(self, role: PartyRole) -> str:
        secret = self.buyer_secret if role is PartyRole.BUYER else self.seller_secret
        assert secret is not None
        return secret


class EscrowHarness:
    """Drives deals through the lifecycle. Every step runs in its own session."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        runtime: EscrowRuntime,
        ledger: SimulatedLedger,
    ) -> None:
        self.session_factory = session_factory
        self.runtime = runtime
        self.ledger = ledger
        self.buyer_address = self.address_for("buyer-wallet")
        self.seller_address = self.address_for("seller-wallet")

    def address_for(self, name: str) -> str:
        address = self.ledger.address_from_key(name)
        self.ledger.register(address)
        return address

    async def create(
        self,
        amount: Decimal = Decimal("100"),
        commission_type: CommissionType = CommissionType.BUYER,
        creator_role: PartyRole = PartyRole.BUYER,
        deadline_hours: float = 72,
        buyer_id: str = BUYER_ID,
        seller_id: str = SELLER_ID,
        description: str = "Logo design, three revisions",
    ) -> DealSetup:
        creator_address = (
            self.buyer_address if creator_role is PartyRole.BUYER else self.seller_address
        )
        async with self.session_factory() as session:
            created = await DealService(session, self.runtime).create_deal(
                creator_role=creator_role,
                buyer_id=buyer_id,
                seller_id=seller_id,
                description=description,
                amount=amount,
                deadline_hours=deadline_hours,
                commission_type=commission_type,
                creator_address=creator_address,
            )
        setup = DealSetup(
            deal_id=created.deal.deal_id,
            multisig_address=created.deal.multisig_address,
            breakdown=created.breakdown,
        )
        if creator_role is PartyRole.BUYER:
            setup.buyer_secret = created.secret
        else:
            setup.seller_secret = created.secret
        setup.extra["buyer_id"] = buyer_id
        setup.extra["seller_id"] = seller_id
        return setup

    async def provide_wallet(self, setup: DealSetup) -> DealSetup:
        deal = await self.get(setup.deal_id)
        role = PartyRole.SELLER if setup.seller_secret is None else PartyRole.BUYER
        actor = deal.seller_id if role is PartyRole.SELLER else deal.buyer_id
        address = self.seller_address if role is PartyRole.SELLER else self.buyer_address
        async with self.session_factory() as session:
            provided = await DealService(session, self.runtime).provide_wallet(
                setup.deal_id, actor, address
            )
        if role is PartyRole.SELLER:
            setup.seller_secret = provided.secret
        else:
            setup.buyer_secret = provided.secret
        return setup

    async def awaiting_deposit(self, **kwargs: object) -> DealSetup:
        return await self.provide_wallet(await self.create(**kwargs))

    def fund(self, setup: DealSetup, amount: Decimal | None = None) -> str:
        assert setup.breakdown is not None
        return self.ledger.deposit(
            setup.multisig_address,
            amount if amount is not None else setup.breakdown.deposit_required,
            from_address=self.buyer_address,
        )

    async def locked(self, **kwargs: object) -> DealSetup:
        setup = await self.awaiting_deposit(**kwargs)
        self.fund(setup)
        monitor = DepositMonitor(self.session_factory, self.runtime)
        await monitor.check_deal(setup.deal_id)
        return setup

    async def in_progress(self, **kwargs: object) -> DealSetup:
        setup = await self.locked(**kwargs)
        async with self.session_factory() as session:
            await DealService(session, self.runtime).submit_work(
                setup.deal_id, setup.extra["seller_id"]
            )
        return setup

    async def accept(self, setup: DealSetup) -> None:
        async with self.session_factory() as session:
            await DealService(session, self.runtime).accept_work(
                setup.deal_id, setup.extra["buyer_id"]
            )

    async def submit_key(self, actor_id: str, secret: str) -> GateOutcome:
        async with self.session_factory() as session:
            return await KeyValidationGate(session, self.runtime).submit(actor_id, secret)

    async def get(self, deal_id: str) -> Deal:
        async with self.session_factory() as session:
            deal = await DealRepository(session).get_by_deal_id(deal_id)
            assert deal is not None
            return deal

    async def event_types(self, deal_id: str) -> list[str]:
        async with self.session_factory() as session:
            deal = await DealRepository(session).get_by_deal_id(deal_id)
            assert deal is not None
            return [e.event_type for e in await EventRepository(session).get_by_deal(deal.id)]

    async def transactions(self, deal_id: str) -> list[Transaction]:
        async with self.session_factory() as session:
            deal = await DealRepository(session).get_by_deal_id(deal_id)
            assert deal is not None
            return await TransactionRepository(session).get_by_deal(deal.id)


@pytest.fixture
def harness(
    session_factory: async_sessionmaker[AsyncSession],
    runtime: EscrowRuntime,
    ledger: SimulatedLedger,
) -> EscrowHarness:
    return EscrowHarness(session_factory, runtime, ledger)
