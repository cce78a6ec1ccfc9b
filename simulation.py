#!/usr/bin/env python3
"""Multisig Escrow: End-to-End Simulation.

Drives deals through the service layer and the monitors on the simulated
ledger, with BuyerBot and SellerBot parties:

    Scenario 1: Happy Path
        - Buyer creates a deal, seller provides its address
        - Buyer funds the multisig -> DepositMonitor locks the deal
        - Seller delivers, buyer accepts -> seller submits its key -> COMPLETED

    Scenario 2: Dispute
        - Funded deal, seller delivers, buyer disputes
        - Arbiter refunds the buyer -> buyer submits its key -> RESOLVED

    Scenario 3: Deadline Refund
        - Funded deal, seller never delivers
        - DeadlineMonitor warns, then gates a buyer refund after the grace period
        - A wrong key is rejected, the right one refunds -> EXPIRED

    Scenario 4: Energy Rental Fallback
        - The resource market refuses the rental
        - The payout tops up the multisig with TRX instead and still completes

Usage:
    python simulation.py
    python simulation.py --scenario 3
"""

from __future__ import annotations

import argparse
import asyncio
import secrets
import tempfile
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from multisig_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from multisig_escrow.config import Settings  # noqa: E402
from multisig_escrow.domain.enums import CommissionType, DealStatus, DisputeDecision, PartyRole  # noqa: E402
from multisig_escrow.infrastructure.crypto import KeyVault  # noqa: E402
from multisig_escrow.infrastructure.database.engine import (  # noqa: E402
    build_engine,
    build_session_factory,
    create_tables,
)
from multisig_escrow.infrastructure.ledger.simulated import (  # noqa: E402
    SimulatedLedger,
    SimulatedResourceMarket,
)
from multisig_escrow.infrastructure.notifications import LoggingNotificationPublisher  # noqa: E402
from multisig_escrow.monitors.deadline_monitor import DeadlineMonitor  # noqa: E402
from multisig_escrow.monitors.deposit_monitor import DepositMonitor  # noqa: E402
from multisig_escrow.services.deal_service import DealService  # noqa: E402
from multisig_escrow.services.dispute_service import DisputeService  # noqa: E402
from multisig_escrow.services.key_validation import KeyValidationGate  # noqa: E402
from multisig_escrow.services.runtime import EscrowRuntime  # noqa: E402

ARBITER_ID = "arbiter-sim"
SERVICE_KEY = secrets.token_hex(32)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
@dataclass
class Environment:
    """One database plus one simulated chain, shared by all parties."""

    session_factory: Any
    runtime: EscrowRuntime
    ledger: SimulatedLedger
    market: SimulatedResourceMarket
    engine: Any = None

    def session(self) -> Any:
        return self.session_factory()


async def init_environment(workdir: Path) -> Environment:
    """Create a fresh SQLite database and a funded service wallet."""
    settings = Settings(
        _env_file=None,
        app_env="development",
        database_url=f"sqlite+aiosqlite:///{workdir / 'simulation.db'}",
        ledger_backend="simulated",
        wallet_encryption_key=Fernet.generate_key().decode(),
        service_wallet_private_key=SERVICE_KEY,
        arbiter_ids=ARBITER_ID,
        single_active_deal_per_party=False,
        transfer_settle_seconds=0,
    )
    engine = build_engine(settings.database_url)
    await create_tables(engine)

    ledger = SimulatedLedger(
        native_asset=settings.native_asset,
        energy_estimate=settings.energy_default_principal,
        energy_per_transfer=settings.energy_min_for_transfer,
    )
    market = SimulatedResourceMarket(ledger, enabled=False)
    ledger.credit(ledger.address_from_key(SERVICE_KEY), Decimal("1000"), "TRX")

    runtime = EscrowRuntime(
        settings=settings,
        ledger=ledger,
        market=market,
        publisher=LoggingNotificationPublisher(),
        vault=KeyVault(settings.wallet_encryption_key),
    )
    logger.info("simulation.environment_ready", database=settings.database_url)
    return Environment(
        session_factory=build_session_factory(engine),
        runtime=runtime,
        ledger=ledger,
        market=market,
        engine=engine,
    )


# ---------------------------------------------------------------------------
# Parties
# ---------------------------------------------------------------------------
@dataclass
class Party:
    """A deal participant with its own settlement address and secret."""

    env: Environment
    party_id: str
    secret: str | None = field(default=None, repr=False)

    @property
    def address(self) -> str:
        address = self.env.ledger.address_from_key(f"{self.party_id}-wallet")
        self.env.ledger.register(address)
        return address

    async def submit_key(self, deal_id: str, secret: str | None = None) -> Any:
        async with self.env.session() as session:
            outcome = await KeyValidationGate(session, self.env.runtime).submit(
                self.party_id, secret if secret is not None else self.secret or ""
            )
        logger.info(
            "PARTY: key submitted",
            party=self.party_id,
            deal_id=deal_id,
            outcome=outcome.status.value,
            message=outcome.message,
        )
        return outcome


@dataclass
class BuyerBot(Party):
    """Creates and funds deals, accepts work, disputes."""

    async def create_deal(self, seller: SellerBot, amount: Decimal, description: str) -> str:
        async with self.env.session() as session:
            created = await DealService(session, self.env.runtime).create_deal(
                creator_role=PartyRole.BUYER,
                buyer_id=self.party_id,
                seller_id=seller.party_id,
                description=description,
                amount=amount,
                deadline_hours=72,
                commission_type=CommissionType.BUYER,
                creator_address=self.address,
            )
        self.secret = created.secret
        breakdown = created.breakdown
        logger.info(
            "BUYER: deal created",
            deal_id=created.deal.deal_id,
            multisig=created.deal.multisig_address,
            deposit_required=str(breakdown.deposit_required),
            commission=str(breakdown.commission),
        )
        return created.deal.deal_id

    async def fund(self, deal_id: str, amount: Decimal | None = None) -> None:
        async with self.env.session() as session:
            svc = DealService(session, self.env.runtime)
            deal = await svc.get_deal(deal_id)
            breakdown = await svc.quote(deal_id)
        tx_hash = self.env.ledger.deposit(
            deal.multisig_address,
            amount if amount is not None else breakdown.deposit_required,
            from_address=self.address,
        )
        logger.info("BUYER: deposit sent", deal_id=deal_id, tx_hash=tx_hash[:16] + "...")

    async def accept(self, deal_id: str) -> None:
        async with self.env.session() as session:
            await DealService(session, self.env.runtime).accept_work(deal_id, self.party_id)
        logger.info("BUYER: work accepted", deal_id=deal_id)

    async def dispute(self, deal_id: str, reason: str) -> None:
        async with self.env.session() as session:
            await DisputeService(session, self.env.runtime).open_dispute(
                deal_id, self.party_id, reason
            )
        logger.info("BUYER: dispute opened", deal_id=deal_id)


@dataclass
class SellerBot(Party):
    """Joins deals with its payout address and delivers work."""

    async def join(self, deal_id: str) -> None:
        async with self.env.session() as session:
            provided = await DealService(session, self.env.runtime).provide_wallet(
                deal_id, self.party_id, self.address
            )
        self.secret = provided.secret
        logger.info("SELLER: address provided", deal_id=deal_id, status=provided.deal.status)

    async def deliver(self, deal_id: str) -> None:
        async with self.env.session() as session:
            await DealService(session, self.env.runtime).submit_work(deal_id, self.party_id)
        logger.info("SELLER: work submitted", deal_id=deal_id)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_deal(env: Environment, deal_id: str) -> None:
    """Print final status, balances and the audit trail."""
    async with env.session() as session:
        svc = DealService(session, env.runtime)
        deal = await svc.get_deal(deal_id)
        events = await svc.get_events(deal_id)
        transactions = await svc.get_transactions(deal_id)

    print(f"\n  Deal {deal_id}: {deal.status}")
    costs = deal.operational_costs or {}
    if costs:
        print(f"  Energy method: {costs.get('energy_method', '-')}")
        print(f"  Native spent:  {costs.get('total_native_spent', '-')} TRX")
    for tx in transactions:
        print(f"  [{tx.type:>8}] {tx.amount} {tx.asset} -> {tx.to_address}")

    section(f"Audit Trail ({len(events)} events)")
    for e in events:
        old = e.old_status or "-"
        print(f"  {e.created_at:%H:%M:%S} | {e.event_type:<28} | {old:>26} -> {e.new_status}")


async def lock_deposit(env: Environment, deal_id: str) -> None:
    outcome = await DepositMonitor(env.session_factory, env.runtime).check_deal(deal_id)
    logger.info("MONITOR: deposit check", deal_id=deal_id, outcome=outcome.value)


def _usdt(env: Environment, party: Party) -> Decimal:
    return env.ledger.balances.get((party.address, "USDT"), Decimal("0"))


# ===========================================================================
# Scenarios
# ===========================================================================
async def scenario_1_happy_path(env: Environment) -> None:
    """Deposit, delivery, acceptance, seller payout."""
    banner("SCENARIO 1: Happy Path")

    buyer = BuyerBot(env, "alice")
    seller = SellerBot(env, "bob")

    section("Step 1: Create deal and collect addresses")
    deal_id = await buyer.create_deal(seller, Decimal("250"), "Brand identity package")
    await seller.join(deal_id)

    section("Step 2: Fund the multisig")
    await buyer.fund(deal_id)
    await lock_deposit(env, deal_id)

    section("Step 3: Deliver and accept")
    await seller.deliver(deal_id)
    await buyer.accept(deal_id)

    section("Step 4: Seller authorizes the payout")
    await seller.submit_key(deal_id)

    print(f"\n  Seller received: {_usdt(env, seller)} USDT")
    await print_deal(env, deal_id)


async def scenario_2_dispute(env: Environment) -> None:
    """Buyer disputes delivered work; the arbiter refunds."""
    banner("SCENARIO 2: Dispute Resolved by Arbiter")

    buyer = BuyerBot(env, "carol")
    seller = SellerBot(env, "dave")

    section("Step 1: Setup (Create -> Join -> Fund -> Deliver)")
    deal_id = await buyer.create_deal(seller, Decimal("120"), "Mobile app mockups")
    await seller.join(deal_id)
    await buyer.fund(deal_id)
    await lock_deposit(env, deal_id)
    await seller.deliver(deal_id)

    section("Step 2: Buyer disputes")
    await buyer.dispute(deal_id, "Mockups do not match the brief")

    section("Step 3: Arbiter refunds the buyer")
    async with env.session() as session:
        await DisputeService(session, env.runtime).resolve_dispute(
            deal_id, ARBITER_ID, DisputeDecision.REFUND_BUYER
        )

    section("Step 4: Buyer authorizes the refund")
    await buyer.submit_key(deal_id)

    print(f"\n  Buyer refunded: {_usdt(env, buyer)} USDT")
    await print_deal(env, deal_id)


async def scenario_3_deadline_refund(env: Environment) -> None:
    """Seller never delivers; the deadline monitor escalates to a refund."""
    banner("SCENARIO 3: Deadline Passed, Buyer Refund")

    buyer = BuyerBot(env, "erin")
    seller = SellerBot(env, "frank")

    section("Step 1: Setup (Create -> Join -> Fund)")
    deal_id = await buyer.create_deal(seller, Decimal("80"), "Translate product manual")
    await seller.join(deal_id)
    await buyer.fund(deal_id)
    await lock_deposit(env, deal_id)

    async with env.session() as session:
        deadline = (await DealService(session, env.runtime).get_deal(deal_id)).deadline
    monitor = DeadlineMonitor(env.session_factory, env.runtime)

    section("Step 2: Deadline passes, both parties warned")
    action = await monitor.check_deal(deal_id, deadline + timedelta(minutes=5))
    print(f"  Monitor: {action.value}")

    section("Step 3: Grace period over, refund gated")
    later = deadline + timedelta(minutes=5) + monitor.grace_for(DealStatus.LOCKED)
    action = await monitor.check_deal(deal_id, later)
    print(f"  Monitor: {action.value}")

    section("Step 4: Wrong key, then the right one")
    await buyer.submit_key(deal_id, secret="not-my-key")
    await buyer.submit_key(deal_id)

    await print_deal(env, deal_id)


async def scenario_4_rental_fallback(env: Environment) -> None:
    """The energy rental fails and the payout falls back to a TRX top-up."""
    banner("SCENARIO 4: Energy Rental Fallback")

    env.market.enabled = True
    env.market.fail_next = 1

    buyer = BuyerBot(env, "grace")
    seller = SellerBot(env, "heidi")

    try:
        deal_id = await buyer.create_deal(seller, Decimal("500"), "Backend API integration")
        await seller.join(deal_id)
        await buyer.fund(deal_id)
        await lock_deposit(env, deal_id)
        await seller.deliver(deal_id)
        await buyer.accept(deal_id)

        section("Seller authorizes; rental refused, top-up used")
        await seller.submit_key(deal_id)
        await print_deal(env, deal_id)
    finally:
        env.market.enabled = False
        env.market.fail_next = 0


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_dispute,
    3: scenario_3_deadline_refund,
    4: scenario_4_rental_fallback,
}


async def run(scenario: int = 0) -> None:
    """Run one scenario, or all of them when scenario is 0."""
    if scenario and scenario not in SCENARIOS:
        print(f"Unknown scenario {scenario}. Available: {', '.join(map(str, SCENARIOS))}")
        return

    with tempfile.TemporaryDirectory() as workdir:
        env = await init_environment(Path(workdir))
        try:
            print("\n" + "=" * 70)
            print("  MULTISIG ESCROW SIMULATION")
            print("  2-of-3 wallets, simulated Tron ledger, SQLite")
            print("=" * 70 + "\n")

            selected = [SCENARIOS[scenario]] if scenario else list(SCENARIOS.values())
            for run_scenario in selected:
                await run_scenario(env)

            print("\n" + "=" * 70)
            print("  ALL SCENARIOS COMPLETED")
            print("=" * 70 + "\n")
        finally:
            await env.engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Multisig Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    args = parser.parse_args()
    asyncio.run(run(args.scenario))
