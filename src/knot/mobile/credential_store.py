"""
Credential Store - secure key/value persistence keyed by (account, service)

Platform keychains (iOS Keychain, Android Keystore-backed storage) implement
:class:`CredentialStore`. Items are readable only after first unlock and never
leave the device; implementations here mirror that contract for tests and
server-side tooling:

- InMemoryCredentialStore: process-local, used by tests
- FileCredentialStore: one 0o600 JSON file per service, atomic writes

Account records (EOA + passkey) are persisted through
:class:`AccountRecordStore`, which validates the schema and the uniqueness of
credential IDs at the boundary of ``save``.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from knot.core.config import ACCOUNTS_RECORD_KEY
from knot.core.knot_exceptions import ResourceError
from knot.mobile.passkey_errors import PasskeyError
from knot.mobile.passkey_verifier import PasskeyPublicKey

logger = logging.getLogger(__name__)

SECURE_FILE_MODE = 0o600
SECURE_DIR_MODE = 0o700


# ==================== Errors ====================


class CredentialStoreError(ResourceError):
    """Base class for credential store failures."""
    pass


class UnexpectedStatus(CredentialStoreError):
    """Platform store returned a status other than success / not found."""

    def __init__(self, status: int, message: Optional[str] = None) -> None:
        text = (
            f"Keychain operation failed ({status}): {message}"
            if message
            else f"Keychain operation failed with status {status}."
        )
        super().__init__(text, details={"status": status})
        self.status = status


class DataNotFound(CredentialStoreError):
    """No item exists for the requested account/service."""

    def __init__(self, account: str = "", service: str = "") -> None:
        super().__init__(
            "No keychain item was found for the requested account/service.",
            details={"account": account, "service": service},
        )


class InvalidData(CredentialStoreError):
    """Stored item is not in the expected format."""

    def __init__(self, message: str = "Keychain returned data in an unexpected format.") -> None:
        super().__init__(message)


class DuplicateCredentialID(CredentialStoreError):
    """Two account records reference the same passkey credential."""

    def __init__(self, credential_id: bytes) -> None:
        super().__init__(
            "Account records must have unique passkey credential IDs.",
            details={"credential_id": credential_id.hex()},
        )
        self.credential_id = credential_id


# ==================== Stores ====================


class CredentialStore(ABC):
    """Secure key/value store keyed by ``(account, service)``."""

    @abstractmethod
    def save(self, data: bytes, account: str, service: str) -> None:
        """Insert or replace the item for ``(account, service)``."""
        pass

    @abstractmethod
    def read(self, account: str, service: str) -> bytes:
        """
        Read the item for ``(account, service)``.

        Raises:
            DataNotFound: No such item
            InvalidData: Item is not a byte string
            UnexpectedStatus: Backend failure
        """
        pass

    @abstractmethod
    def delete(self, account: str, service: str) -> None:
        """Delete the item; deleting a missing item is not an error."""
        pass


class InMemoryCredentialStore(CredentialStore):
    """Process-local credential store."""

    def __init__(self) -> None:
        self._items: Dict[Tuple[str, str], bytes] = {}

    def save(self, data: bytes, account: str, service: str) -> None:
        if not isinstance(data, (bytes, bytearray)):
            raise InvalidData("Credential data must be bytes.")
        self._items[(account, service)] = bytes(data)

    def read(self, account: str, service: str) -> bytes:
        try:
            return self._items[(account, service)]
        except KeyError:
            raise DataNotFound(account, service) from None

    def delete(self, account: str, service: str) -> None:
        self._items.pop((account, service), None)

    def __len__(self) -> int:
        return len(self._items)


class FileCredentialStore(CredentialStore):
    """
    File-backed credential store.

    Each service maps to ``<directory>/<service>.json`` holding base64 items
    keyed by account. Files are written atomically with mode 0o600.
    """

    def __init__(self, directory: str) -> None:
        self.directory = directory
        try:
            os.makedirs(directory, mode=SECURE_DIR_MODE, exist_ok=True)
        except OSError as exc:
            raise UnexpectedStatus(exc.errno or -1, str(exc)) from exc

    def _path(self, service: str) -> str:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", service)
        return os.path.join(self.directory, f"{safe}.json")

    def _load(self, service: str) -> Dict[str, str]:
        path = self._path(service)
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r", encoding="utf-8") as handle:
                items = json.load(handle)
        except ValueError as exc:
            raise InvalidData(f"Credential file for {service} is corrupt.") from exc
        except OSError as exc:
            raise UnexpectedStatus(exc.errno or -1, str(exc)) from exc
        if not isinstance(items, dict):
            raise InvalidData(f"Credential file for {service} is corrupt.")
        return items

    def _write(self, service: str, items: Dict[str, str]) -> None:
        path = self._path(service)
        tmp = f"{path}.tmp"
        try:
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, SECURE_FILE_MODE)
            os.fchmod(fd, SECURE_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(items, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, path)
        except OSError as exc:
            logger.error(
                "Credential store write failed: %s",
                exc,
                extra={"event": "credential_store.write_failed", "service": service},
            )
            raise UnexpectedStatus(exc.errno or -1, str(exc)) from exc

    def save(self, data: bytes, account: str, service: str) -> None:
        if not isinstance(data, (bytes, bytearray)):
            raise InvalidData("Credential data must be bytes.")
        items = self._load(service)
        items[account] = base64.b64encode(bytes(data)).decode("ascii")
        self._write(service, items)

    def read(self, account: str, service: str) -> bytes:
        items = self._load(service)
        if account not in items:
            raise DataNotFound(account, service)
        try:
            return base64.b64decode(items[account], validate=True)
        except (binascii.Error, TypeError) as exc:
            raise InvalidData() from exc

    def delete(self, account: str, service: str) -> None:
        items = self._load(service)
        if items.pop(account, None) is not None:
            self._write(service, items)


# ==================== Account Records ====================


def normalize_address_key(address: str) -> str:
    """Lowercase, whitespace-trimmed address used as a lookup key."""
    return address.strip().lower()


@dataclass(frozen=True)
class StoredAccountRecord:
    """Persisted account: EOA, its passkey and the derived accumulator."""
    eoa_address: str
    passkey: PasskeyPublicKey
    accumulator_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eoa_address": self.eoa_address,
            "passkey": self.passkey.to_dict(),
            "accumulator_address": self.accumulator_address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredAccountRecord":
        if not isinstance(data, dict):
            raise InvalidData("Account record is not an object.")
        eoa_address = data.get("eoa_address")
        passkey = data.get("passkey")
        accumulator_address = data.get("accumulator_address")
        if not isinstance(eoa_address, str) or not isinstance(passkey, dict):
            raise InvalidData("Account record is missing eoa_address or passkey.")
        if accumulator_address is not None and not isinstance(accumulator_address, str):
            raise InvalidData("Account record accumulator_address must be a string.")
        try:
            key = PasskeyPublicKey.from_dict(passkey)
        except PasskeyError as exc:
            raise InvalidData(f"Stored passkey is invalid: {exc.message}") from exc
        return cls(eoa_address=eoa_address, passkey=key, accumulator_address=accumulator_address)


class AccountRecordStore:
    """Reads and writes the account record list kept in the credential store."""

    def __init__(
        self,
        store: CredentialStore,
        service: str,
        account: str = ACCOUNTS_RECORD_KEY,
    ) -> None:
        self.store = store
        self.service = service
        self.account = account

    def load(self) -> List[StoredAccountRecord]:
        """Load all records; an absent item means no accounts yet."""
        try:
            raw = self.store.read(self.account, self.service)
        except DataNotFound:
            return []
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise InvalidData("Stored account records could not be decoded.") from exc
        if not isinstance(payload, list):
            raise InvalidData("Stored account records must be a list.")
        return [StoredAccountRecord.from_dict(item) for item in payload]

    def save(self, records: List[StoredAccountRecord]) -> None:
        """
        Persist ``records``.

        Raises:
            DuplicateCredentialID: Two records share a credential ID
            InvalidData: A record has an empty EOA address
        """
        seen = set()
        for record in records:
            if not normalize_address_key(record.eoa_address):
                raise InvalidData("Account record has an empty EOA address.")
            credential_id = record.passkey.credential_id
            if credential_id in seen:
                raise DuplicateCredentialID(credential_id)
            seen.add(credential_id)

        data = json.dumps([record.to_dict() for record in records]).encode("utf-8")
        self.store.save(data, self.account, self.service)

    def upsert(self, record: StoredAccountRecord) -> List[StoredAccountRecord]:
        """Replace by credential ID, then by EOA address, else append."""
        records = self.load()
        address_key = normalize_address_key(record.eoa_address)

        for index, existing in enumerate(records):
            if existing.passkey.credential_id == record.passkey.credential_id:
                records[index] = record
                break
        else:
            for index, existing in enumerate(records):
                if normalize_address_key(existing.eoa_address) == address_key:
                    records[index] = record
                    break
            else:
                records.append(record)

        self.save(records)
        logger.info(
            "Account record stored",
            extra={"event": "credential_store.account_upserted", "eoa": address_key},
        )
        return records

    def find_by_credential_id(self, credential_id: bytes) -> Optional[StoredAccountRecord]:
        for record in self.load():
            if record.passkey.credential_id == credential_id:
                return record
        return None

    def find_by_address(self, eoa_address: str) -> Optional[StoredAccountRecord]:
        key = normalize_address_key(eoa_address)
        for record in self.load():
            if normalize_address_key(record.eoa_address) == key:
                return record
        return None
