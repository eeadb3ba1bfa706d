"""
Host ledger: the call primitive contracts execute against.

:class:`HostLedger` is the boundary between contract logic and a chain. A
call moves native value, runs the target's code and reports success plus the
raw return (or revert) bytes. Failed calls leave no state behind.

:class:`InMemoryLedger` keeps balances, nonces, per-contract storage and
contract code (Python handlers) in memory with snapshot/revert support. It is
not an EVM: gas is recorded, not metered.
"""

from __future__ import annotations

import copy
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import is_address, to_checksum_address

from knot.core import config

from ..vm.exceptions import ExecutionReverted, OutOfGas, VMExecutionError
from .abi import ERC20_BALANCE_OF, ERC20_MINT, ERC20_TRANSFER, encode_error, selector

logger = logging.getLogger(__name__)

UINT256_MAX = 2**256 - 1

# EIP-7702 delegation designator prefix
DELEGATION_PREFIX = bytes.fromhex("ef0100")


@dataclass(frozen=True)
class CallContext:
    """Execution context handed to contract code."""
    ledger: "HostLedger"
    sender: str
    target: str
    value: int
    data: bytes
    gas: int

    @property
    def selector(self) -> bytes:
        return self.data[:4]

    @property
    def arguments(self) -> bytes:
        return self.data[4:]


@dataclass(frozen=True)
class CallOutcome:
    success: bool
    return_data: bytes = b""
    gas_forwarded: int = 0


@dataclass(frozen=True)
class CallRecord:
    sender: str
    target: str
    value: int
    data: bytes
    gas: int
    success: bool


ContractHandler = Callable[[CallContext, Dict[str, Any]], Optional[bytes]]


def normalize(address: str) -> str:
    if not isinstance(address, str) or not is_address(address):
        raise VMExecutionError(f"Invalid address: {address!r}")
    return to_checksum_address(address)


class HostLedger(ABC):
    """Call primitive and state access for one chain."""

    @property
    @abstractmethod
    def chain_id(self) -> int:
        pass

    @abstractmethod
    def call(self, sender: str, target: str, value: int, data: bytes, gas: int = 0) -> CallOutcome:
        """
        Perform a raw call forwarding ``gas`` (all available when 0).

        Never raises for callee failures; those are reported through
        ``CallOutcome.success`` with the revert payload as ``return_data``.
        """
        pass

    @abstractmethod
    def snapshot(self) -> int:
        pass

    @abstractmethod
    def revert_to(self, snapshot_id: int) -> None:
        pass

    def discard_snapshot(self, snapshot_id: int) -> None:
        """Forget a snapshot that will not be reverted to."""
        pass

    @abstractmethod
    def balance_of(self, address: str) -> int:
        pass

    @abstractmethod
    def nonce_of(self, address: str) -> int:
        pass

    @abstractmethod
    def increment_nonce(self, address: str) -> int:
        pass

    @abstractmethod
    def set_delegation(self, eoa: str, delegate: str) -> None:
        """Install an EIP-7702 delegation designator on ``eoa``."""
        pass


@dataclass
class InMemoryLedger(HostLedger):
    """In-memory ledger with journaled snapshots."""

    ledger_chain_id: int
    gas_limit: int = field(default_factory=config.block_gas_limit)

    balances: Dict[str, int] = field(default_factory=dict)
    nonces: Dict[str, int] = field(default_factory=dict)
    storage: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    code: Dict[str, ContractHandler] = field(default_factory=dict)
    delegations: Dict[str, str] = field(default_factory=dict)
    call_log: List[CallRecord] = field(default_factory=list)

    _snapshots: Dict[int, tuple] = field(default_factory=dict, repr=False)
    _snapshot_ids: Any = field(default_factory=lambda: itertools.count(1), repr=False)

    @property
    def chain_id(self) -> int:
        return self.ledger_chain_id

    # ==================== State Access ====================

    def balance_of(self, address: str) -> int:
        return self.balances.get(normalize(address), 0)

    def set_balance(self, address: str, amount: int) -> None:
        if not 0 <= amount <= UINT256_MAX:
            raise VMExecutionError(f"Balance out of range: {amount}")
        self.balances[normalize(address)] = amount

    def nonce_of(self, address: str) -> int:
        return self.nonces.get(normalize(address), 0)

    def increment_nonce(self, address: str) -> int:
        key = normalize(address)
        self.nonces[key] = self.nonces.get(key, 0) + 1
        return self.nonces[key]

    def deploy(
        self,
        address: str,
        handler: ContractHandler,
        storage: Optional[Dict[str, Any]] = None,
    ) -> str:
        key = normalize(address)
        self.code[key] = handler
        self.storage[key] = storage if storage is not None else {}
        return key

    def storage_of(self, address: str) -> Dict[str, Any]:
        return self.storage.setdefault(normalize(address), {})

    def set_delegation(self, eoa: str, delegate: str) -> None:
        self.delegations[normalize(eoa)] = normalize(delegate)

    def delegation_of(self, eoa: str) -> Optional[str]:
        return self.delegations.get(normalize(eoa))

    def code_of(self, address: str) -> bytes:
        """Delegation designator for delegated EOAs, empty otherwise."""
        delegate = self.delegation_of(address)
        if delegate is None:
            return b""
        return DELEGATION_PREFIX + bytes.fromhex(delegate[2:])

    # ==================== Snapshots ====================

    def snapshot(self) -> int:
        snapshot_id = next(self._snapshot_ids)
        self._snapshots[snapshot_id] = (
            dict(self.balances),
            dict(self.nonces),
            copy.deepcopy(self.storage),
            dict(self.delegations),
        )
        return snapshot_id

    def revert_to(self, snapshot_id: int) -> None:
        if snapshot_id not in self._snapshots:
            raise VMExecutionError(f"Unknown snapshot: {snapshot_id}")
        balances, nonces, storage, delegations = self._snapshots[snapshot_id]
        # Restore in place; running handlers hold references to these dicts
        for current, saved in (
            (self.balances, balances),
            (self.nonces, nonces),
            (self.delegations, delegations),
        ):
            current.clear()
            current.update(saved)
        for address in [a for a in self.storage if a not in storage]:
            del self.storage[address]
        for address, saved in storage.items():
            slot = self.storage.setdefault(address, {})
            slot.clear()
            slot.update(copy.deepcopy(saved))
        for later in [sid for sid in self._snapshots if sid >= snapshot_id]:
            del self._snapshots[later]

    def discard_snapshot(self, snapshot_id: int) -> None:
        self._snapshots.pop(snapshot_id, None)

    # ==================== Calls ====================

    def call(self, sender: str, target: str, value: int, data: bytes, gas: int = 0) -> CallOutcome:
        sender_key = normalize(sender)
        target_key = normalize(target)
        data = bytes(data)
        forwarded = self.gas_limit if gas == 0 else gas

        checkpoint = self.snapshot()
        success, return_data = self._execute(sender_key, target_key, value, data, forwarded)
        if success:
            self.discard_snapshot(checkpoint)
        else:
            self.revert_to(checkpoint)

        self.call_log.append(
            CallRecord(sender_key, target_key, value, data, forwarded, success)
        )
        return CallOutcome(success, return_data, forwarded)

    def _execute(self, sender: str, target: str, value: int, data: bytes, gas: int):
        if value < 0 or value > UINT256_MAX:
            return False, b""
        if value:
            sender_balance = self.balances.get(sender, 0)
            if sender_balance < value:
                logger.debug(
                    "Call value exceeds sender balance",
                    extra={"event": "ledger.insufficient_balance", "sender": sender[:10]},
                )
                return False, b""
            self.balances[sender] = sender_balance - value
            self.balances[target] = self.balances.get(target, 0) + value

        handler = self.code.get(target)
        if handler is None:
            return True, b""

        context = CallContext(self, sender, target, value, data, gas)
        try:
            result = handler(context, self.storage.setdefault(target, {}))
        except ExecutionReverted as exc:
            return False, exc.revert_data
        except OutOfGas:
            return False, b""
        except VMExecutionError as exc:
            return False, encode_error(exc.message)
        return True, bytes(result or b"")


# ==================== ERC-20 Token Code ====================


def erc20_handler(context: CallContext, storage: Dict[str, Any]) -> bytes:
    """Minimal ERC-20: transfer, balanceOf and owner-only mint."""
    balances = storage.setdefault("balances", {})
    try:
        if context.selector == selector(ERC20_TRANSFER):
            recipient, amount = abi_decode(["address", "uint256"], context.arguments)
            recipient = to_checksum_address(recipient)
            sender_balance = balances.get(context.sender, 0)
            if sender_balance < amount:
                raise ExecutionReverted(encode_error("ERC20: transfer amount exceeds balance"))
            balances[context.sender] = sender_balance - amount
            balances[recipient] = balances.get(recipient, 0) + amount
            return abi_encode(["bool"], [True])

        if context.selector == selector(ERC20_BALANCE_OF):
            (holder,) = abi_decode(["address"], context.arguments)
            return abi_encode(["uint256"], [balances.get(to_checksum_address(holder), 0)])

        if context.selector == selector(ERC20_MINT):
            if context.sender != storage.get("owner"):
                raise ExecutionReverted(encode_error("ERC20: caller is not the owner"))
            recipient, amount = abi_decode(["address", "uint256"], context.arguments)
            recipient = to_checksum_address(recipient)
            balances[recipient] = balances.get(recipient, 0) + amount
            return abi_encode(["bool"], [True])
    except DecodingError as exc:
        raise ExecutionReverted(encode_error(f"ERC20: bad calldata ({exc})")) from exc

    raise ExecutionReverted(encode_error("ERC20: unknown selector"))


def deploy_erc20(
    ledger: InMemoryLedger,
    address: str,
    owner: str,
    balances: Optional[Dict[str, int]] = None,
) -> str:
    """Deploy :func:`erc20_handler` at ``address`` with initial balances."""
    initial = {normalize(holder): amount for holder, amount in (balances or {}).items()}
    return ledger.deploy(address, erc20_handler, {"owner": normalize(owner), "balances": initial})


def erc20_balance(ledger: InMemoryLedger, token: str, holder: str) -> int:
    return ledger.storage_of(token).get("balances", {}).get(normalize(holder), 0)
