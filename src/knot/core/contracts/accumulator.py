"""
Job Accumulator.

Tracks partial deposits for a job arriving from several source chains, gates
execution on an explicit approval, and then either executes the job's calls
(grouped per chain, in declared order) or refunds every depositor.

State machine::

    ACCUMULATING --mark_accumulated--> ACCUMULATED --execute--> EXECUTED
         |                                  |
         +-------------- refund ------------+--> REFUNDED

Guarantees:
- A job is initialized exactly once and its input token never changes
- ``received`` only grows while ACCUMULATING and is frozen afterwards
- Status only moves forward; terminal jobs stay queryable
- Execution and refunds are atomic across every ledger they touch

No locking is done here; callers serialize mutation per job the way a chain
serializes transactions.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Union

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from knot.core import config
from knot.core.knot_exceptions import UnknownChain

from ..vm.exceptions import VMExecutionError
from .abi import (
    ACCUMULATOR_SIGNATURES,
    CHAIN_CALLS_ARRAY,
    ZERO_ADDRESS,
    AccumulatorMessage,
    Call,
    ChainCalls,
    erc20_transfer_calldata,
    selector,
)
from .call_executor import Exec
from .host_ledger import HostLedger, normalize

logger = logging.getLogger(__name__)

UINT256_MAX = 2**256 - 1

JobId = Union[int, bytes, str]


class JobStatus(Enum):
    ACCUMULATING = "accumulating"
    ACCUMULATED = "accumulated"
    EXECUTED = "executed"
    REFUNDED = "refunded"


# ==================== Errors ====================


class AccumulatorError(VMExecutionError):
    """Base class for accumulator guard violations; job state is unchanged."""
    pass


class InvalidJobId(AccumulatorError):
    pass


class AlreadyInitialized(AccumulatorError):
    pass


class JobNotInitialized(AccumulatorError):
    pass


class NotAccumulating(AccumulatorError):
    pass


class InvalidAmount(AccumulatorError):
    pass


class InvalidSourceChain(AccumulatorError):
    pass


class InputTokenMismatch(AccumulatorError):
    pass


class ThresholdNotMet(AccumulatorError):
    pass


class InvalidTransition(AccumulatorError):
    pass


class Unauthorized(AccumulatorError):
    pass


class NotApproved(AccumulatorError):
    pass


class CallFailed(AccumulatorError):
    """A job call failed; every ledger touched has been rolled back."""

    def __init__(self, chain_id: int, call_index: int, revert_data: bytes) -> None:
        revert_data = bytes(revert_data)
        super().__init__(
            f"Call {call_index} on chain {chain_id} failed",
            details={
                "chain_id": chain_id,
                "call_index": call_index,
                "revert_data": "0x" + revert_data.hex(),
            },
        )
        self.chain_id = chain_id
        self.call_index = call_index
        self.revert_data = revert_data


# ==================== State ====================


@dataclass(frozen=True)
class Deposit:
    depositor: str
    chain_id: int
    amount: int


@dataclass
class JobState:
    """Per-job accounting."""
    received: int = 0
    approved: bool = False
    initialized: bool = False
    status: JobStatus = JobStatus.ACCUMULATING
    input_token: str = ZERO_ADDRESS
    source_chains: Set[int] = field(default_factory=set)
    deposits: List[Deposit] = field(default_factory=list)

    def deposits_by_depositor(self) -> Dict[str, int]:
        """Total per depositor, in first-deposit order."""
        totals: Dict[str, int] = {}
        for deposit in self.deposits:
            totals[deposit.depositor] = totals.get(deposit.depositor, 0) + deposit.amount
        return totals


@dataclass
class AccumulatorEvent:
    """Represents an accumulator event."""

    event_type: str
    job_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


def normalize_job_id(job_id: JobId) -> bytes:
    """
    Normalize a job id to its 32-byte form.

    Accepts an int (uint256), 32 raw bytes, or a 0x-prefixed 32-byte hex string.
    """
    if isinstance(job_id, bool):
        raise InvalidJobId(f"Invalid job id: {job_id!r}")
    if isinstance(job_id, int):
        if not 0 <= job_id <= UINT256_MAX:
            raise InvalidJobId(f"Job id out of uint256 range: {job_id}")
        return job_id.to_bytes(32, "big")
    if isinstance(job_id, (bytes, bytearray)):
        if len(job_id) != 32:
            raise InvalidJobId(f"Job id must be 32 bytes, got {len(job_id)}")
        return bytes(job_id)
    if isinstance(job_id, str):
        text = job_id[2:] if job_id.lower().startswith("0x") else job_id
        if len(text) != 64:
            raise InvalidJobId(f"Job id must be 32 bytes of hex: {job_id!r}")
        try:
            return bytes.fromhex(text)
        except ValueError as exc:
            raise InvalidJobId(f"Job id is not hex: {job_id!r}") from exc
    raise InvalidJobId(f"Unsupported job id type: {type(job_id).__name__}")


# ==================== Contract ====================


@dataclass
class JobAccumulator:
    """
    Multi-chain job accumulator.

    The accumulator lives at ``address`` on every chain in ``ledgers``;
    refunds are paid out on ``home_chain_id``. ``owner`` is the delegated EOA;
    it manages approvers and may execute or refund. When a ``messenger`` is
    configured only it (or the owner) may initialize jobs and register
    deposits.
    """

    address: str
    owner: str
    home_chain_id: int
    ledgers: Dict[int, HostLedger] = field(default_factory=dict)
    approvers: Set[str] = field(default_factory=set)
    messenger: Optional[str] = None
    max_revert_data: int = field(default_factory=config.accumulator_max_revert_data)
    call_gas_limit: int = field(default_factory=config.accumulator_call_gas_limit)

    jobs: Dict[bytes, JobState] = field(default_factory=dict)
    events: List[AccumulatorEvent] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.address = normalize(self.address)
        self.owner = normalize(self.owner)
        self.approvers = {normalize(a) for a in self.approvers}
        if self.messenger is not None:
            self.messenger = normalize(self.messenger)
        if self.home_chain_id not in self.ledgers:
            raise UnknownChain(self.home_chain_id)
        for chain_id, ledger in self.ledgers.items():
            if ledger.chain_id != chain_id:
                raise VMExecutionError(
                    f"Ledger for chain {chain_id} reports chain {ledger.chain_id}"
                )

    # ==================== View Functions ====================

    def get_job(self, job_id: JobId) -> JobState:
        """Copy of the job's state; uninitialized ids return a blank state."""
        key = normalize_job_id(job_id)
        return copy.deepcopy(self.jobs.get(key, JobState()))

    def status_of(self, job_id: JobId) -> JobStatus:
        return self.get_job(job_id).status

    def is_approver(self, address: str) -> bool:
        return normalize(address) in self.approvers

    # ==================== Roles ====================

    def grant_approver(self, approver: str, caller: str) -> None:
        self._require_owner(caller)
        self.approvers.add(normalize(approver))
        self._emit("ApproverGranted", b"\x00" * 32, {"approver": normalize(approver)})

    def revoke_approver(self, approver: str, caller: str) -> None:
        self._require_owner(caller)
        self.approvers.discard(normalize(approver))
        self._emit("ApproverRevoked", b"\x00" * 32, {"approver": normalize(approver)})

    # ==================== State-Changing Functions ====================

    def initialize(self, job_id: JobId, input_token: str, caller: Optional[str] = None) -> None:
        """
        Create a job bound to ``input_token``.

        Raises:
            AlreadyInitialized: The job exists
            Unauthorized: A messenger is configured and ``caller`` is not it
        """
        key = normalize_job_id(job_id)
        self._require_registrar(caller)
        if key in self.jobs and self.jobs[key].initialized:
            raise AlreadyInitialized(f"Job {key.hex()} already initialized")

        token = normalize(input_token)
        self.jobs[key] = JobState(initialized=True, input_token=token)
        self._emit("JobInitialized", key, {"input_token": token})
        logger.info(
            "Job initialized",
            extra={"event": "accumulator.initialized", "job_id": key.hex(), "input_token": token},
        )

    def register_deposit(
        self,
        job_id: JobId,
        chain_id: int,
        amount: int,
        depositor: Optional[str] = None,
        caller: Optional[str] = None,
    ) -> int:
        """
        Record ``amount`` arriving from ``chain_id``; returns the new total.

        Raises:
            JobNotInitialized: Unknown job
            NotAccumulating: Job already accumulated or terminal
            InvalidAmount: amount <= 0 or the total would overflow uint256
        """
        key = normalize_job_id(job_id)
        self._require_registrar(caller)
        job = self._require_initialized(key)
        if job.status != JobStatus.ACCUMULATING:
            raise NotAccumulating(f"Job {key.hex()} is {job.status.value}")
        self._check_deposit(chain_id, amount)
        if job.received + amount > UINT256_MAX:
            raise InvalidAmount("Deposit would overflow the job total")

        payer = normalize(depositor) if depositor else self.owner
        job.received += amount
        job.source_chains.add(chain_id)
        job.deposits.append(Deposit(payer, chain_id, amount))

        self._emit("DepositRegistered", key, {"chain_id": chain_id, "amount": amount, "depositor": payer})
        logger.info(
            "Deposit registered",
            extra={
                "event": "accumulator.deposit",
                "job_id": key.hex(),
                "chain_id": chain_id,
                "amount": amount,
                "received": job.received,
            },
        )
        return job.received

    def handle_deposit_message(
        self,
        job_id: JobId,
        chain_id: int,
        amount: int,
        input_token: str,
        depositor: Optional[str] = None,
        caller: Optional[str] = None,
    ) -> int:
        """Register a bridged deposit, creating the job on its first deposit."""
        key = normalize_job_id(job_id)
        self._require_registrar(caller)
        self._check_deposit(chain_id, amount)
        job = self.jobs.get(key)
        if job is None or not job.initialized:
            self.initialize(key, input_token, caller)
        elif normalize(input_token) != job.input_token:
            raise InputTokenMismatch(
                f"Job {key.hex()} accumulates {job.input_token}, got {normalize(input_token)}"
            )
        return self.register_deposit(key, chain_id, amount, depositor, caller)

    def handle_bridge_message(
        self,
        chain_id: int,
        amount: int,
        message: bytes,
        caller: Optional[str] = None,
    ) -> bytes:
        """
        Process an encoded bridge message; returns the job id.

        Marks the job accumulated once ``min_input`` has been received.
        """
        decoded = AccumulatorMessage.decode(message)
        key = decoded.job_id(self.owner)
        received = self.handle_deposit_message(
            key, chain_id, amount, decoded.input_token, self.owner, caller
        )
        if received >= decoded.min_input:
            self.mark_accumulated(key, decoded.min_input)
        return key

    def mark_accumulated(self, job_id: JobId, required_amount: int) -> None:
        """
        Close accumulation once ``required_amount`` has been received.

        Raises:
            InvalidTransition: Job is not ACCUMULATING
            ThresholdNotMet: received < required_amount
        """
        key = normalize_job_id(job_id)
        job = self._require_initialized(key)
        if job.status != JobStatus.ACCUMULATING:
            raise InvalidTransition(f"Cannot mark {job.status.value} job as accumulated")
        if isinstance(required_amount, bool) or not isinstance(required_amount, int) or required_amount < 0:
            raise InvalidAmount(f"Invalid threshold: {required_amount!r}")
        if job.received < required_amount:
            raise ThresholdNotMet(f"Received {job.received} of {required_amount}")

        job.status = JobStatus.ACCUMULATED
        self._emit("JobAccumulated", key, {"received": job.received})
        logger.info(
            "Job accumulated",
            extra={"event": "accumulator.accumulated", "job_id": key.hex(), "received": job.received},
        )

    def approve(self, job_id: JobId, caller: str) -> None:
        """Approve execution; idempotent while ACCUMULATING or ACCUMULATED."""
        key = normalize_job_id(job_id)
        if not self.is_approver(caller):
            logger.warning(
                "Approval rejected for non-approver",
                extra={"event": "accumulator.approve_rejected", "job_id": key.hex()},
            )
            raise Unauthorized(f"{caller} is not an approver")
        job = self._require_initialized(key)
        if job.status not in (JobStatus.ACCUMULATING, JobStatus.ACCUMULATED):
            raise InvalidTransition(f"Cannot approve {job.status.value} job")
        if job.approved:
            return

        job.approved = True
        self._emit("JobApproved", key, {"approver": normalize(caller)})
        logger.info(
            "Job approved",
            extra={"event": "accumulator.approved", "job_id": key.hex()},
        )

    def execute(self, job_id: JobId, chain_calls: Sequence[ChainCalls], caller: str) -> None:
        """
        Run every call of every group, in declared order, through Exec.

        On the first failure all touched ledgers are rolled back, the job
        stays ACCUMULATED and :class:`CallFailed` carries the revert payload
        (bounded by ``max_revert_data``).
        """
        key = normalize_job_id(job_id)
        self._require_operator(caller)
        job = self._require_initialized(key)
        if job.status != JobStatus.ACCUMULATED:
            raise InvalidTransition(f"Cannot execute {job.status.value} job")
        if not job.approved:
            raise NotApproved(f"Job {key.hex()} has not been approved")

        groups = list(chain_calls)
        for group in groups:
            if group.chain_id not in self.ledgers:
                raise UnknownChain(group.chain_id)

        involved = list(dict.fromkeys(group.chain_id for group in groups))
        snapshots = {chain_id: self.ledgers[chain_id].snapshot() for chain_id in involved}

        try:
            for group in groups:
                executor = Exec(self.ledgers[group.chain_id], self.address)
                for index, call in enumerate(group.calls):
                    if not executor.call(call.target, call.value, call.data, self.call_gas_limit):
                        revert_data = executor.capture_return_data(self.max_revert_data)
                        self._rollback(snapshots)
                        logger.error(
                            "Job call failed; execution rolled back",
                            extra={
                                "event": "accumulator.call_failed",
                                "job_id": key.hex(),
                                "chain_id": group.chain_id,
                                "call_index": index,
                            },
                        )
                        raise CallFailed(group.chain_id, index, revert_data)
        except CallFailed:
            raise
        except Exception:
            self._rollback(snapshots)
            raise

        for chain_id, snapshot_id in snapshots.items():
            self.ledgers[chain_id].discard_snapshot(snapshot_id)

        job.status = JobStatus.EXECUTED
        self._emit(
            "JobExecuted",
            key,
            {"chains": involved, "calls": sum(len(group.calls) for group in groups)},
        )
        logger.info(
            "Job executed",
            extra={"event": "accumulator.executed", "job_id": key.hex(), "chains": involved},
        )

    def refund(self, job_id: JobId, caller: str) -> None:
        """
        Return every depositor's total in the job's input token on the home chain.

        Native transfers are used for the zero-address token, ERC-20
        ``transfer`` otherwise. All transfers succeed or none do.
        """
        key = normalize_job_id(job_id)
        self._require_operator(caller)
        job = self._require_initialized(key)
        if job.status not in (JobStatus.ACCUMULATING, JobStatus.ACCUMULATED):
            raise InvalidTransition(f"Cannot refund {job.status.value} job")

        ledger = self.ledgers[self.home_chain_id]
        executor = Exec(ledger, self.address)
        payouts = job.deposits_by_depositor()
        snapshot_id = ledger.snapshot()

        try:
            for index, (depositor, amount) in enumerate(payouts.items()):
                if job.input_token == ZERO_ADDRESS:
                    ok = executor.call(depositor, amount, b"", self.call_gas_limit)
                else:
                    ok = executor.call(
                        job.input_token,
                        0,
                        erc20_transfer_calldata(depositor, amount),
                        self.call_gas_limit,
                    )
                    if ok and executor.return_data_size >= 32:
                        ok = any(executor.capture_return_data(32))
                if not ok:
                    revert_data = executor.capture_return_data(self.max_revert_data)
                    ledger.revert_to(snapshot_id)
                    logger.error(
                        "Refund transfer failed; refund rolled back",
                        extra={
                            "event": "accumulator.refund_failed",
                            "job_id": key.hex(),
                            "depositor": depositor,
                        },
                    )
                    raise CallFailed(self.home_chain_id, index, revert_data)
        except CallFailed:
            raise
        except Exception:
            ledger.revert_to(snapshot_id)
            raise

        ledger.discard_snapshot(snapshot_id)
        job.status = JobStatus.REFUNDED
        self._emit("JobRefunded", key, {"depositors": len(payouts), "amount": job.received})
        logger.info(
            "Job refunded",
            extra={"event": "accumulator.refunded", "job_id": key.hex(), "amount": job.received},
        )

    # ==================== ABI Entry Point ====================

    def dispatch(self, calldata: bytes, caller: str) -> None:
        """Route ABI-encoded calldata for one of the six entry points."""
        calldata = bytes(calldata)
        handlers = {
            selector(ACCUMULATOR_SIGNATURES["initialize"]): (
                ["bytes32", "address"],
                lambda job, token: self.initialize(job, token, caller),
            ),
            selector(ACCUMULATOR_SIGNATURES["register_deposit"]): (
                ["bytes32", "uint256", "uint256", "address"],
                lambda job, chain, amount, who: self.register_deposit(job, chain, amount, who, caller),
            ),
            selector(ACCUMULATOR_SIGNATURES["mark_accumulated"]): (
                ["bytes32", "uint256"],
                lambda job, required: self.mark_accumulated(job, required),
            ),
            selector(ACCUMULATOR_SIGNATURES["approve"]): (
                ["bytes32"],
                lambda job: self.approve(job, caller),
            ),
            selector(ACCUMULATOR_SIGNATURES["execute"]): (
                ["bytes32", CHAIN_CALLS_ARRAY],
                lambda job, groups: self.execute(
                    job,
                    [ChainCalls(cid, tuple(Call(t, v, d) for t, v, d in calls)) for cid, calls in groups],
                    caller,
                ),
            ),
            selector(ACCUMULATOR_SIGNATURES["refund"]): (
                ["bytes32"],
                lambda job: self.refund(job, caller),
            ),
        }
        entry = handlers.get(calldata[:4])
        if entry is None:
            raise AccumulatorError(f"Unknown selector 0x{calldata[:4].hex()}")
        types, handler = entry
        try:
            arguments = abi_decode(types, calldata[4:])
        except DecodingError as exc:
            raise AccumulatorError(f"Malformed calldata: {exc}") from exc
        handler(*arguments)

    # ==================== Internal ====================

    def _rollback(self, snapshots: Mapping[int, int]) -> None:
        for chain_id, snapshot_id in reversed(list(snapshots.items())):
            self.ledgers[chain_id].revert_to(snapshot_id)

    @staticmethod
    def _check_deposit(chain_id: int, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(f"Deposit amount must be positive, got {amount!r}")
        if isinstance(chain_id, bool) or not isinstance(chain_id, int) or chain_id <= 0:
            raise InvalidSourceChain(f"Invalid source chain: {chain_id!r}")

    def _require_initialized(self, key: bytes) -> JobState:
        job = self.jobs.get(key)
        if job is None or not job.initialized:
            raise JobNotInitialized(f"Job {key.hex()} is not initialized")
        return job

    def _require_owner(self, caller: str) -> None:
        if normalize(caller) != self.owner:
            raise Unauthorized("Caller is not the owner")

    def _require_operator(self, caller: str) -> None:
        who = normalize(caller)
        if who != self.owner and who not in self.approvers:
            logger.warning(
                "Rejected caller for privileged accumulator operation",
                extra={"event": "accumulator.unauthorized", "caller": who},
            )
            raise Unauthorized(f"{who} may not execute or refund jobs")

    def _require_registrar(self, caller: Optional[str]) -> None:
        if self.messenger is None:
            return
        if caller is None or normalize(caller) not in (self.messenger, self.owner):
            raise Unauthorized("Only the messenger may register deposits")

    def _emit(self, event_type: str, key: bytes, data: Dict[str, Any]) -> None:
        self.events.append(AccumulatorEvent(event_type=event_type, job_id="0x" + key.hex(), data=data))
