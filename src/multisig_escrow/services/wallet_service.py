"""Multisig wallet provisioning and key custody.

Each deal gets a fresh 2-of-3 wallet (buyer, seller, arbiter). The service
keeps one custodial key to co-sign with whichever party the key validation
gate authorizes. Party secrets are generated here, handed out exactly once,
and afterwards only exist Fernet-encrypted on the wallet row.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from multisig_escrow.domain.enums import PartyRole
from multisig_escrow.domain.exceptions import InvalidAddressError, LedgerError
from multisig_escrow.infrastructure.database.orm_models import MultisigWallet
from multisig_escrow.infrastructure.database.repositories import WalletRepository
from multisig_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from multisig_escrow.infrastructure.database.orm_models import Deal
    from multisig_escrow.services.runtime import EscrowRuntime

logger = get_logger(__name__)

SIGNATURE_THRESHOLD = 2


def _permissions(wallet: MultisigWallet) -> dict:
    keys = [
        {"role": "buyer", "address": wallet.buyer_public_key, "weight": 1},
        {"role": "seller", "address": wallet.seller_public_key, "weight": 1},
        {"role": "arbiter", "address": wallet.arbiter_public_key, "weight": 1},
    ]
    return {"threshold": SIGNATURE_THRESHOLD, "keys": [k for k in keys if k["address"]]}


class WalletService:
    def __init__(self, session: AsyncSession, runtime: EscrowRuntime) -> None:
        self._session = session
        self._runtime = runtime
        self._wallet_repo = WalletRepository(session)

    async def validate_settlement_address(self, address: str) -> str:
        """Check format and on-chain existence. Returns the stripped address."""
        address = address.strip()
        ledger = self._runtime.ledger
        if not await ledger.validate_address(address):
            raise InvalidAddressError(address, "malformed address")
        try:
            exists = await ledger.address_exists(address)
        except LedgerError as e:
            logger.warning("wallet.existence_check_failed", address=address, error=e.message)
            raise InvalidAddressError(address, "could not be verified, try again later") from e
        if not exists:
            raise InvalidAddressError(address, "not activated on the network")
        return address

    async def provision(self, deal: Deal) -> MultisigWallet:
        """Create the deal's multisig wallet and stamp its address on the deal."""
        keypair = self._runtime.ledger.generate_keypair()
        wallet = MultisigWallet(
            deal_pk=deal.id,
            address=keypair.address,
            encrypted_private_key=self._runtime.vault.encrypt(keypair.private_key),
            buyer_public_key=deal.buyer_address,
            seller_public_key=deal.seller_address,
            arbiter_public_key=self._runtime.settings.arbiter_address or None,
            threshold=SIGNATURE_THRESHOLD,
        )
        wallet.permissions = _permissions(wallet)
        wallet = await self._wallet_repo.create(wallet)
        deal.multisig_address = wallet.address
        await self._session.flush()

        logger.info("wallet.provisioned", deal_id=deal.deal_id, address=wallet.address)
        return wallet

    async def attach_party(self, wallet: MultisigWallet, role: PartyRole, address: str) -> None:
        if role is PartyRole.BUYER:
            wallet.buyer_public_key = address
        else:
            wallet.seller_public_key = address
        wallet.permissions = _permissions(wallet)
        await self._session.flush()

    async def issue_secret(self, wallet: MultisigWallet, role: PartyRole) -> str:
        """Generate the party's secret, store it encrypted and return the plaintext once."""
        secret = self._runtime.ledger.generate_keypair().private_key
        token = self._runtime.vault.encrypt(secret)
        if role is PartyRole.BUYER:
            wallet.encrypted_buyer_secret = token
        else:
            wallet.encrypted_seller_secret = token
        await self._session.flush()
        logger.info("wallet.secret_issued", address=wallet.address, role=role.value)
        return secret

    def secret_matches(self, wallet: MultisigWallet, role: PartyRole, candidate: str) -> bool:
        token = (
            wallet.encrypted_buyer_secret
            if role is PartyRole.BUYER
            else wallet.encrypted_seller_secret
        )
        return self._runtime.vault.matches(token, candidate)

    def custodial_key(self, wallet: MultisigWallet) -> str:
        return self._runtime.vault.decrypt(wallet.encrypted_private_key)

    async def get_for_deal(self, deal: Deal) -> MultisigWallet:
        wallet = await self._wallet_repo.get_by_deal(deal.id)
        if wallet is None:
            raise LedgerError(f"No multisig wallet for deal {deal.deal_id}", code="WALLET_MISSING")
        return wallet

    async def activate(self, deal: Deal) -> tuple[Decimal, Decimal]:
        """Send the activation top-up to the multisig.

        Returns (sent, tx_fee). Failures are logged and return zeros; an
        unactivated wallet is topped up again by the payout fallback.
        """
        settings = self._runtime.settings
        wallet = await self.get_for_deal(deal)
        if wallet.activated:
            return Decimal("0"), Decimal("0")
        if not settings.service_wallet_private_key:
            logger.warning("wallet.activation_skipped", deal_id=deal.deal_id, reason="no service key")
            return Decimal("0"), Decimal("0")

        try:
            receipt = await self._runtime.ledger.fund_account(
                settings.service_wallet_private_key,
                wallet.address,
                settings.activation_amount,
            )
        except LedgerError as e:
            logger.error("wallet.activation_failed", deal_id=deal.deal_id, error=e.message)
            return Decimal("0"), Decimal("0")
        if not receipt.success:
            logger.error("wallet.activation_failed", deal_id=deal.deal_id, error=receipt.error)
            return Decimal("0"), Decimal("0")

        await self._wallet_repo.mark_activated(wallet, receipt.tx_hash)
        logger.info(
            "wallet.activated",
            deal_id=deal.deal_id,
            address=wallet.address,
            tx_hash=receipt.tx_hash,
            amount=str(settings.activation_amount),
        )
        return settings.activation_amount, settings.native_tx_fee
