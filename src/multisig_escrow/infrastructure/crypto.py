"""Encryption of wallet key material at rest.

Custodial private keys and party secrets are stored Fernet-encrypted on the
multisig_wallets row and only decrypted for the duration of a single
operation.

Usage:
    vault = KeyVault.from_settings(get_settings())
    token = vault.encrypt(private_key_hex)
    private_key_hex = vault.decrypt(token)
"""

from __future__ import annotations

import hmac
from typing import TYPE_CHECKING

from cryptography.fernet import Fernet, InvalidToken

from multisig_escrow.domain.exceptions import ConfigurationError
from multisig_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from multisig_escrow.config import Settings

logger = get_logger(__name__)


class KeyVault:
    """Symmetric encryption for key material (Fernet: AES-128-CBC + HMAC-SHA256)."""

    def __init__(self, key: str | bytes) -> None:
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError("WALLET_ENCRYPTION_KEY is not a valid Fernet key") from e

    @classmethod
    def from_settings(cls, settings: Settings) -> KeyVault:
        """Build the vault from settings.

        Production refuses to start without a key. Development generates an
        ephemeral one, which makes previously stored wallets unreadable after
        a restart.
        """
        if settings.wallet_encryption_key:
            return cls(settings.wallet_encryption_key)
        if not settings.is_development:
            raise ConfigurationError("WALLET_ENCRYPTION_KEY must be set outside development")
        logger.warning(
            "crypto.ephemeral_key_generated",
            hint="stored wallets become unreadable after restart",
        )
        return cls(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise ConfigurationError("Stored key material cannot be decrypted with this key") from e

    def matches(self, token: str | None, candidate: str) -> bool:
        """Constant-time comparison of `candidate` against an encrypted value."""
        if not token:
            return False
        expected = self.decrypt(token)
        return hmac.compare_digest(expected.encode(), candidate.strip().encode())
