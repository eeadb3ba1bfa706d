"""
Wallet material: BIP-39 mnemonic backed EOAs.

The EOA that gets delegated through EIP-7702 is generated locally from a
12-word mnemonic (default derivation path m/44'/60'/0'/0/0). The mnemonic is
the only persisted secret; the private key is re-derived on read.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from eth_account import Account
from eth_utils import ValidationError as EthValidationError
from mnemonic import Mnemonic

from knot.core import config
from knot.core.authorization import LocalAccountSigner
from knot.core.knot_exceptions import KnotError
from knot.mobile.credential_store import (
    CredentialStore,
    InvalidData,
    normalize_address_key,
)

logger = logging.getLogger(__name__)

SEED_SCHEMA_VERSION = 1
SEED_ACCOUNT_PREFIX = "wallet.seed.v1."
SUPPORTED_WORD_COUNTS = (12, 15, 18, 21, 24)

Account.enable_unaudited_hdwallet_features()


class WalletMaterialError(KnotError):
    """Raised when wallet material cannot be generated or derived."""
    pass


@dataclass(frozen=True)
class WalletMaterial:
    """Mnemonic, derived key and address of a locally generated EOA."""
    eoa_address: str
    mnemonic: str = field(repr=False)
    private_key_hex: str = field(repr=False)

    def signer(self) -> LocalAccountSigner:
        return LocalAccountSigner(self.private_key_hex)


class WalletMaterialFactory:
    """Creates EOAs from fresh or existing mnemonics."""

    def generate_mnemonic(self, word_count: int = 12) -> str:
        if word_count not in SUPPORTED_WORD_COUNTS:
            raise WalletMaterialError(
                f"Unsupported mnemonic length: {word_count}",
                details={"word_count": word_count},
            )
        return Mnemonic("english").generate(strength=word_count * 32 // 3)

    def from_mnemonic(self, mnemonic: str) -> WalletMaterial:
        """
        Derive wallet material from an existing mnemonic.

        No BIP-39 passphrase is applied: the mnemonic alone must re-derive the
        EOA when the seed is read back from the credential store.

        Raises:
            WalletMaterialError: If the mnemonic is invalid
        """
        if not isinstance(mnemonic, str) or not Mnemonic("english").check(mnemonic.strip()):
            raise WalletMaterialError("Invalid mnemonic phrase.")
        try:
            account = Account.from_mnemonic(mnemonic.strip())
        except (EthValidationError, ValueError) as exc:
            raise WalletMaterialError("Failed to derive account from mnemonic.") from exc
        return WalletMaterial(
            eoa_address=account.address,
            mnemonic=mnemonic.strip(),
            private_key_hex="0x" + bytes(account.key).hex(),
        )

    def create_new_eoa(self) -> WalletMaterial:
        wallet = self.from_mnemonic(self.generate_mnemonic())
        logger.info(
            "Generated new EOA",
            extra={"event": "wallet.generated", "eoa": wallet.eoa_address},
        )
        return wallet


class WalletMaterialStore:
    """Persists wallet seeds in the credential store, one item per EOA."""

    def __init__(
        self,
        store: CredentialStore,
        service: Optional[str] = None,
        factory: Optional[WalletMaterialFactory] = None,
    ) -> None:
        self.store = store
        self.service = service or config.WALLET_SEED_SERVICE
        self.factory = factory or WalletMaterialFactory()

    @staticmethod
    def account_key(eoa_address: str) -> str:
        return SEED_ACCOUNT_PREFIX + normalize_address_key(eoa_address)

    def save(self, wallet: WalletMaterial) -> None:
        address_key = normalize_address_key(wallet.eoa_address)
        if not address_key:
            raise InvalidData("Wallet material has an empty EOA address.")
        if not wallet.mnemonic.strip():
            raise InvalidData("Wallet material has an empty mnemonic.")

        record = {
            "version": SEED_SCHEMA_VERSION,
            "eoa_address": address_key,
            "mnemonic": wallet.mnemonic,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.store.save(json.dumps(record).encode("utf-8"), self.account_key(address_key), self.service)

    def read(self, eoa_address: str) -> WalletMaterial:
        """
        Load and re-derive the wallet for ``eoa_address``.

        Raises:
            DataNotFound: No seed stored for this EOA
            InvalidData: Stored seed is corrupt or derives a different address
        """
        raw = self.store.read(self.account_key(eoa_address), self.service)
        try:
            record = json.loads(raw.decode("utf-8"))
            mnemonic = record["mnemonic"]
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
            raise InvalidData("Stored wallet seed could not be decoded.") from exc
        if not isinstance(mnemonic, str):
            raise InvalidData("Stored wallet seed could not be decoded.")

        try:
            wallet = self.factory.from_mnemonic(mnemonic)
        except WalletMaterialError as exc:
            raise InvalidData("Stored wallet seed is not a valid mnemonic.") from exc

        if normalize_address_key(wallet.eoa_address) != normalize_address_key(eoa_address):
            logger.error(
                "Stored seed derives a different address",
                extra={"event": "wallet.address_mismatch", "eoa": normalize_address_key(eoa_address)},
            )
            raise InvalidData("Stored wallet seed does not match the requested EOA.")
        return wallet

    def delete(self, eoa_address: str) -> None:
        self.store.delete(self.account_key(eoa_address), self.service)
