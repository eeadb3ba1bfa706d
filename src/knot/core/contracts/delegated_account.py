"""
Delegated account: EIP-7702 delegate code running as the user's EOA.

Activation applies a signed authorization the way a set-code transaction
does: the authorization must target this chain, carry the EOA's current
nonce and recover to the EOA itself. Once active the account can batch
calls and drive the job accumulator as its owner.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from knot.core.authorization import RecoveryFailed, SignedAuthorization, recover_authority_address

from ..vm.exceptions import VMExecutionError
from .abi import ACCUMULATOR_SIGNATURES, Call, ChainCalls, decode_chain_calls, selector
from .accumulator import JobAccumulator, JobId
from .call_executor import Exec
from .host_ledger import HostLedger, normalize

logger = logging.getLogger(__name__)


class DelegationError(VMExecutionError):
    """Raised when an authorization cannot be applied or the account is misused."""
    pass


class WrongChain(DelegationError):
    pass


class NonceMismatch(DelegationError):
    pass


class AuthorityMismatch(DelegationError):
    pass


class NotActivated(DelegationError):
    pass


class OnlySelf(DelegationError):
    pass


@dataclass
class DelegatedAccount:
    """User EOA running delegate code on one ledger."""

    ledger: HostLedger
    eoa: str
    authorization: SignedAuthorization
    active: bool = False

    def __post_init__(self) -> None:
        self.eoa = normalize(self.eoa)

    @property
    def delegate_address(self) -> str:
        return self.authorization.delegate_address

    def activate(self) -> None:
        """
        Apply the authorization to the ledger.

        Raises:
            WrongChain: Authorization chain differs from the ledger's
            NonceMismatch: Authorization nonce is not the EOA's current nonce
            AuthorityMismatch: Signature does not recover to the EOA
        """
        auth = self.authorization
        if auth.chain_id != self.ledger.chain_id:
            raise WrongChain(
                f"Authorization is for chain {auth.chain_id}, ledger is {self.ledger.chain_id}"
            )
        current_nonce = self.ledger.nonce_of(self.eoa)
        if auth.nonce != current_nonce:
            raise NonceMismatch(f"Authorization nonce {auth.nonce}, account nonce {current_nonce}")
        try:
            authority = recover_authority_address(auth)
        except RecoveryFailed as exc:
            raise AuthorityMismatch(exc.message) from exc
        if authority != self.eoa:
            logger.warning(
                "Authorization signed by a different account",
                extra={"event": "delegation.authority_mismatch", "chain_id": auth.chain_id},
            )
            raise AuthorityMismatch(f"Authorization signed by {authority}, not {self.eoa}")

        self.ledger.increment_nonce(self.eoa)
        self.ledger.set_delegation(self.eoa, auth.delegate_address)
        self.active = True
        logger.info(
            "Delegation activated",
            extra={
                "event": "delegation.activated",
                "chain_id": auth.chain_id,
                "delegate": auth.delegate_address,
            },
        )

    def execute_batch(self, calls: Sequence[Call], caller: Optional[str] = None) -> List[bytes]:
        """
        Run ``calls`` in order as the EOA; returns each call's return data.

        The first failing call aborts the batch: earlier effects are rolled
        back and its revert payload is re-raised verbatim.
        """
        self._require_active()
        if caller is not None and normalize(caller) != self.eoa:
            raise OnlySelf("Batch calls must originate from the account itself")

        executor = Exec(self.ledger, self.eoa)
        snapshot_id = self.ledger.snapshot()
        results: List[bytes] = []
        try:
            for index, call in enumerate(calls):
                if not executor.call(call.target, call.value, call.data):
                    executor.capture_return_data()
                    logger.warning(
                        "Batch call reverted",
                        extra={
                            "event": "delegation.batch_reverted",
                            "call_index": index,
                            "return_size": executor.return_data_size,
                        },
                    )
                    executor.revert_with_captured_data()
                results.append(executor.capture_return_data())
        except Exception:
            self.ledger.revert_to(snapshot_id)
            raise
        self.ledger.discard_snapshot(snapshot_id)
        return results

    def execute_chain_calls(self, calldata: bytes, caller: Optional[str] = None) -> List[bytes]:
        """Handle ``executeChainCalls(bytes)``; runs only the group for this chain."""
        calldata = bytes(calldata)
        if calldata[:4] != selector(ACCUMULATOR_SIGNATURES["execute_chain_calls"]):
            raise DelegationError(f"Unknown selector 0x{calldata[:4].hex()}")
        try:
            (payload,) = abi_decode(["bytes"], calldata[4:])
        except DecodingError as exc:
            raise DelegationError(f"Malformed calldata: {exc}") from exc

        calls: List[Call] = []
        for group in decode_chain_calls(payload):
            if group.chain_id == self.ledger.chain_id:
                calls.extend(group.calls)
        return self.execute_batch(calls, caller)

    def execute_job(self, accumulator: JobAccumulator, job_id: JobId, chain_calls: Iterable[ChainCalls]) -> None:
        """Execute an accumulated job with this account as the accumulator owner."""
        self._require_active()
        accumulator.execute(job_id, list(chain_calls), caller=self.eoa)

    def _require_active(self) -> None:
        if not self.active:
            raise NotActivated(f"Account {self.eoa} has no active delegation")
