"""Process-wide collaborators shared by services and monitors.

The runtime is built once in the app lifespan (or by a test fixture) and
handed to every service alongside its database session:

    runtime = build_runtime(get_settings(), publisher)
    service = DealService(session, runtime)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from multisig_escrow.domain.notifications import DealNotification
from multisig_escrow.infrastructure.crypto import KeyVault
from multisig_escrow.infrastructure.ledger import LedgerFactory
from multisig_escrow.infrastructure.locks import KeyedLocks
from multisig_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from multisig_escrow.config import Settings
    from multisig_escrow.domain.enums import NotificationEvent
    from multisig_escrow.domain.ledger import LedgerClient, ResourceMarket
    from multisig_escrow.domain.notifications import NotificationPublisher
    from multisig_escrow.infrastructure.database.orm_models import Deal

logger = get_logger(__name__)


@dataclass
class EscrowRuntime:
    settings: Settings
    ledger: LedgerClient
    market: ResourceMarket
    publisher: NotificationPublisher
    vault: KeyVault
    payout_locks: KeyedLocks = field(default_factory=KeyedLocks)
    gate_locks: KeyedLocks = field(default_factory=KeyedLocks)

    async def notify(
        self,
        event: NotificationEvent,
        deal: Deal | None,
        recipients: tuple[str, ...] | None = None,
        **context: object,
    ) -> None:
        """Publish a notification. Defaults to both parties of `deal`."""
        if recipients is None:
            recipients = (deal.buyer_id, deal.seller_id) if deal is not None else ()
        await self.publisher.publish(
            DealNotification(
                event=event,
                deal_id=deal.deal_id if deal is not None else None,
                recipients=recipients,
                context=dict(context),
            )
        )

    def explorer_url(self, tx_hash: str | None) -> str | None:
        if not tx_hash:
            return None
        return self.settings.explorer_tx_url.format(tx_hash=tx_hash)

    @property
    def service_address(self) -> str | None:
        """Commission and sweep destination."""
        if self.settings.service_wallet_address:
            return self.settings.service_wallet_address
        if self.settings.service_wallet_private_key:
            return self.ledger.address_from_key(self.settings.service_wallet_private_key)
        return None

    async def aclose(self) -> None:
        """Close the HTTP clients held by the ledger and the resource market."""
        for resource in (self.ledger, self.market):
            close = getattr(resource, "aclose", None)
            if close is not None:
                await close()


def build_runtime(settings: Settings, publisher: NotificationPublisher) -> EscrowRuntime:
    ledger, market = LedgerFactory.create(settings)
    logger.info(
        "runtime.built",
        ledger_backend=settings.ledger_backend,
        market_enabled=market.enabled,
    )
    return EscrowRuntime(
        settings=settings,
        ledger=ledger,
        market=market,
        publisher=publisher,
        vault=KeyVault.from_settings(settings),
    )
