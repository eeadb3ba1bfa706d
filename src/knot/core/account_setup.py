"""
Account setup flow.

Provisioning creates a fresh EOA, signs its EIP-7702 delegation, registers a
passkey bound to the EOA, derives the account's accumulator address and
persists wallet seed plus account record in the credential store. Sign-in
asserts one of the stored passkeys and verifies the assertion before a session
is returned.

Presentation failures from the passkey provider (``MissingWindowAnchor``,
``AuthorizationFailed``) propagate unchanged; every other failure is wrapped in
the matching :class:`AccountSetupError` subclass with the cause chained.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak, to_canonical_address, to_checksum_address

from knot.core import config
from knot.core.authorization import AuthorizationBuilder, SignedAuthorization
from knot.core.created_account import CreatedAccount
from knot.core.knot_exceptions import AuthorizationFailed, KnotError
from knot.core.wallet_material import (
    WalletMaterial,
    WalletMaterialError,
    WalletMaterialFactory,
    WalletMaterialStore,
)
from knot.mobile.credential_store import (
    AccountRecordStore,
    CredentialStore,
    CredentialStoreError,
    InvalidData,
    StoredAccountRecord,
    normalize_address_key,
)
from knot.mobile.passkey_ceremony import PasskeyCeremonyProvider
from knot.mobile.passkey_errors import MissingWindowAnchor, PasskeyError
from knot.mobile.passkey_verifier import (
    PasskeyPublicKey,
    PasskeyRelyingParty,
    PasskeyVerifier,
    challenge_for_payload,
)

logger = logging.getLogger(__name__)

CHALLENGE_LENGTH = 32

AccumulatorDeriver = Callable[[str, int], str]


# ==================== Errors ====================


class AccountSetupError(KnotError):
    """Base class for account provisioning and sign-in failures."""
    pass


class MissingStoredPasskey(AccountSetupError):
    def __init__(self) -> None:
        super().__init__("No stored passkey public data found.")


class WalletGenerationFailed(AccountSetupError):
    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Failed to generate wallet material: {cause}")


class PasskeyRegistrationFailed(AccountSetupError):
    recoverable = True

    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Passkey registration failed: {cause}")


class WalletStorageFailed(AccountSetupError):
    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Failed to persist wallet material locally: {cause}")


class AuthorizationStorageFailed(AccountSetupError):
    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Failed to save signed authorization: {cause}")


class PasskeyAssertionFailed(AccountSetupError):
    recoverable = True

    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Passkey assertion failed during sign-in: {cause}")


class AuthorizationDecodeFailed(AccountSetupError):
    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Stored authorization data could not be decoded: {cause}")


class AccumulatorDerivationFailed(AccountSetupError):
    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Failed to derive accumulator address: {cause}")


class MissingStoredAccumulator(AccountSetupError):
    def __init__(self, eoa_address: str) -> None:
        super().__init__(
            f"No stored accumulator address found for EOA {eoa_address}.",
            details={"eoa_address": eoa_address},
        )
        self.eoa_address = eoa_address


class MissingStoredAccount(AccountSetupError):
    def __init__(self, eoa_address: str) -> None:
        super().__init__(
            f"No stored account found for EOA {eoa_address}.",
            details={"eoa_address": eoa_address},
        )
        self.eoa_address = eoa_address


# ==================== Models ====================


@dataclass(frozen=True)
class AccountSession:
    """Signed-in account: lowercased addresses plus the passkey credential ID."""
    eoa_address: str
    accumulator_address: str
    passkey_credential_id: bytes


def derive_accumulator_address(
    eoa_address: str,
    chain_id: int,
    factory_address: Optional[str] = None,
    init_code_hash: Optional[str] = None,
) -> str:
    """CREATE2 address of the accumulator deployed for ``eoa_address`` on ``chain_id``."""
    factory = to_canonical_address(factory_address or config.ACCUMULATOR_FACTORY_ADDRESS)
    code_hash = bytes.fromhex((init_code_hash or config.ACCUMULATOR_INIT_CODE_HASH)[2:])
    if len(code_hash) != 32:
        raise ValueError("init code hash must be 32 bytes")
    salt = keccak(abi_encode(["address", "uint256"], [to_checksum_address(eoa_address), chain_id]))
    return to_checksum_address(keccak(b"\xff" + factory + salt + code_hash)[12:])


# ==================== Service ====================


class AccountSetupService:
    """Provisions, restores and authenticates passkey-backed accounts."""

    def __init__(
        self,
        provider: PasskeyCeremonyProvider,
        credential_store: CredentialStore,
        verifier: Optional[PasskeyVerifier] = None,
        wallet_store: Optional[WalletMaterialStore] = None,
        wallet_factory: Optional[WalletMaterialFactory] = None,
        builder: Optional[AuthorizationBuilder] = None,
        relying_party: Optional[PasskeyRelyingParty] = None,
        keychain_service: Optional[str] = None,
        accumulator_deriver: Optional[AccumulatorDeriver] = None,
    ) -> None:
        self.provider = provider
        self.relying_party = relying_party or PasskeyRelyingParty(config.RP_ID, config.RP_NAME)
        self.verifier = verifier or PasskeyVerifier(self.relying_party, config.ALLOWED_ORIGINS)
        self.wallet_factory = wallet_factory or WalletMaterialFactory()
        self.wallet_store = wallet_store or WalletMaterialStore(
            credential_store, factory=self.wallet_factory
        )
        self.builder = builder or AuthorizationBuilder()
        self.records = AccountRecordStore(
            credential_store, keychain_service or config.KEYCHAIN_SERVICE
        )
        self.accumulator_deriver = accumulator_deriver or derive_accumulator_address

    # ==================== Provisioning ====================

    def provision_account(
        self,
        delegate_address: str,
        chain_id: int = 1,
        nonce: int = 0,
    ) -> CreatedAccount:
        """
        Create an EOA, delegate it and bind a new passkey to it.

        Raises:
            AuthorizationError: Invalid chain ID, delegate address or nonce
            MissingWindowAnchor: No presentation anchor for the passkey prompt
            AuthorizationFailed: The passkey prompt or signing was refused
            AccountSetupError: Any other step failed
        """
        try:
            wallet = self.wallet_factory.create_new_eoa()
        except WalletMaterialError as exc:
            raise WalletGenerationFailed(exc) from exc

        signed = self.builder.build(chain_id, delegate_address, nonce, wallet.signer())
        passkey = self._register_passkey(wallet)

        try:
            accumulator_address = self.accumulator_deriver(wallet.eoa_address, chain_id)
        except (ValueError, KnotError) as exc:
            raise AccumulatorDerivationFailed(exc) from exc

        try:
            self.wallet_store.save(wallet)
        except CredentialStoreError as exc:
            raise WalletStorageFailed(exc) from exc

        try:
            self.records.upsert(
                StoredAccountRecord(
                    eoa_address=wallet.eoa_address,
                    passkey=passkey,
                    accumulator_address=accumulator_address,
                )
            )
        except CredentialStoreError as exc:
            raise AuthorizationStorageFailed(exc) from exc

        logger.info(
            "Account provisioned",
            extra={
                "event": "account_setup.provisioned",
                "eoa": wallet.eoa_address,
                "chain_id": chain_id,
            },
        )
        return CreatedAccount(eoa_address=wallet.eoa_address, passkey=passkey, signed_authorization=signed)

    def _register_passkey(self, wallet: WalletMaterial) -> PasskeyPublicKey:
        challenge = secrets.token_bytes(CHALLENGE_LENGTH)
        user_id = uuid.uuid4().bytes
        try:
            response = self.provider.register(
                self.relying_party, challenge, wallet.eoa_address, user_id
            )
            return self.verifier.verify_attestation(
                response.raw_attestation_object,
                response.raw_client_data_json,
                challenge,
                credential_id=response.credential_id,
                user_name=wallet.eoa_address,
            )
        except (MissingWindowAnchor, AuthorizationFailed):
            raise
        except PasskeyError as exc:
            raise PasskeyRegistrationFailed(exc) from exc

    # ==================== Sign-in ====================

    def authenticate_account(self) -> AccountSession:
        """Assert any stored passkey and return the matching account session."""
        records = self._load_records()
        if not records:
            raise MissingStoredPasskey()

        challenge = secrets.token_bytes(CHALLENGE_LENGTH)
        try:
            response = self.provider.assert_credential(
                self.relying_party,
                challenge,
                [record.passkey.credential_id for record in records],
            )
        except (MissingWindowAnchor, AuthorizationFailed):
            raise
        except PasskeyError as exc:
            raise PasskeyAssertionFailed(exc) from exc

        matched = next(
            (r for r in records if r.passkey.credential_id == bytes(response.credential_id)),
            None,
        )
        if matched is None:
            raise MissingStoredPasskey()

        try:
            self.verifier.verify_assertion(
                response.signature,
                response.authenticator_data,
                response.client_data_json,
                matched.passkey,
                challenge,
                credential_id=response.credential_id,
            )
        except PasskeyError as exc:
            logger.warning(
                "Sign-in assertion rejected",
                extra={"event": "account_setup.assertion_rejected", "error": exc.message},
            )
            raise PasskeyAssertionFailed(exc) from exc

        session = self._session_for(matched)
        logger.info(
            "Account authenticated",
            extra={"event": "account_setup.authenticated", "eoa": session.eoa_address},
        )
        return session

    def list_stored_accounts(self) -> List[AccountSession]:
        return [self._session_for(record) for record in self._load_records()]

    def restore_account(self, eoa_address: str) -> AccountSession:
        key = normalize_address_key(eoa_address)
        for record in self._load_records():
            if normalize_address_key(record.eoa_address) == key:
                return self._session_for(record)
        raise MissingStoredAccount(eoa_address)

    def stored_wallet_material(self, eoa_address: str) -> WalletMaterial:
        return self.wallet_store.read(eoa_address)

    def passkey_public_key(self, session: AccountSession) -> PasskeyPublicKey:
        for record in self._load_records():
            if record.passkey.credential_id == session.passkey_credential_id:
                return record.passkey
        raise MissingStoredAccount(session.eoa_address)

    # ==================== Signing ====================

    def sign_with_stored_passkey(self, session: AccountSession, payload: bytes) -> bytes:
        """
        Sign ``payload`` with the session's passkey.

        Returns the ABI-encoded WebAuthn auth struct for on-chain verification.
        """
        passkey = self.passkey_public_key(session)
        result = self._assert_payload(passkey, bytes(payload))
        try:
            return result.signature.normalized().webauthn_auth_bytes(bytes(payload))
        except PasskeyError as exc:
            raise PasskeyAssertionFailed(exc) from exc

    def verify_stored_passkey(self, session: AccountSession, action: str) -> None:
        """Require a fresh user-verified assertion before ``action``."""
        passkey = self.passkey_public_key(session)
        payload = (
            f"knot:{action}:{normalize_address_key(session.eoa_address)}:".encode("utf-8")
            + secrets.token_bytes(CHALLENGE_LENGTH)
        )
        self._assert_payload(passkey, payload)

    def _assert_payload(self, passkey: PasskeyPublicKey, payload: bytes):
        challenge = challenge_for_payload(payload)
        try:
            response = self.provider.assert_credential(
                self.relying_party, challenge, [passkey.credential_id]
            )
            return self.verifier.verify_assertion(
                response.signature,
                response.authenticator_data,
                response.client_data_json,
                passkey,
                challenge,
                credential_id=response.credential_id,
            )
        except (MissingWindowAnchor, AuthorizationFailed):
            raise
        except PasskeyError as exc:
            raise PasskeyAssertionFailed(exc) from exc

    def signed_authorization_for_chain(
        self,
        session: AccountSession,
        chain_id: int,
        delegate_address: str,
        nonce: int = 0,
    ) -> SignedAuthorization:
        """Sign a delegation for another chain with the stored wallet key."""
        if not any(
            r.passkey.credential_id == session.passkey_credential_id for r in self._load_records()
        ):
            raise MissingStoredAccount(session.eoa_address)
        wallet = self.wallet_store.read(session.eoa_address)
        return self.builder.build(chain_id, delegate_address, nonce, wallet.signer())

    def sign_eth_digest_with_stored_wallet(self, session: AccountSession, digest: bytes) -> bytes:
        """
        Sign a 32-byte digest as an Ethereum signed message.

        Returns the 65-byte ``r || s || v`` signature with v in {27, 28}.
        """
        digest = bytes(digest)
        if len(digest) != 32:
            raise AccountSetupError(f"Digest must be 32 bytes, got {len(digest)}")
        wallet = self.wallet_store.read(session.eoa_address)
        signed = Account.sign_message(encode_defunct(primitive=digest), private_key=wallet.private_key_hex)
        return bytes(signed.signature)

    # ==================== Internal ====================

    def _load_records(self) -> List[StoredAccountRecord]:
        try:
            return self.records.load()
        except InvalidData as exc:
            raise AuthorizationDecodeFailed(exc) from exc

    @staticmethod
    def _session_for(record: StoredAccountRecord) -> AccountSession:
        eoa_address = normalize_address_key(record.eoa_address)
        if not eoa_address:
            raise MissingStoredAccount(record.eoa_address)
        accumulator = normalize_address_key(record.accumulator_address or "")
        if not accumulator:
            raise MissingStoredAccumulator(eoa_address)
        return AccountSession(
            eoa_address=eoa_address,
            accumulator_address=accumulator,
            passkey_credential_id=record.passkey.credential_id,
        )
