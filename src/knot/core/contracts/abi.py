"""
ABI types and encoders for the accumulator and delegated account contracts.

Call = (address target, uint256 value, bytes data), matching the Solidity
struct. Bridge messages decoded by the accumulator on the destination chain
use ``(address, address, address, uint256, uint256, Call[], uint256)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from ..vm.exceptions import VMExecutionError

CALL_TUPLE = "(address,uint256,bytes)"
CALL_ARRAY = f"{CALL_TUPLE}[]"
CHAIN_CALLS_ARRAY = f"(uint256,{CALL_ARRAY})[]"
MESSAGE_TYPES = ["address", "address", "address", "uint256", "uint256", CALL_ARRAY, "uint256"]
JOB_ID_TYPES = ["address", "address", "address", "address", "uint256", "uint256", CALL_ARRAY]

UINT256_MAX = 2**256 - 1
ZERO_ADDRESS = "0x" + "00" * 20

# Error(string) selector used for revert reasons
ERROR_SELECTOR = bytes.fromhex("08c379a0")

ACCUMULATOR_SIGNATURES = {
    "initialize": "initialize(bytes32,address)",
    "register_deposit": "registerDeposit(bytes32,uint256,uint256,address)",
    "mark_accumulated": "markAccumulated(bytes32,uint256)",
    "approve": "approve(bytes32)",
    "execute": f"execute(bytes32,{CHAIN_CALLS_ARRAY})",
    "refund": "refund(bytes32)",
    "execute_chain_calls": "executeChainCalls(bytes)",
}

ERC20_TRANSFER = "transfer(address,uint256)"
ERC20_BALANCE_OF = "balanceOf(address)"
ERC20_MINT = "mint(address,uint256)"


class ABIEncodingError(VMExecutionError):
    """Raised when calldata cannot be encoded or decoded."""
    pass


def selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


@dataclass(frozen=True)
class Call:
    """Single external call: target, native value and calldata."""
    target: str
    value: int = 0
    data: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "target", to_checksum_address(self.target))
        if not 0 <= self.value <= UINT256_MAX:
            raise ABIEncodingError(f"Call value out of range: {self.value}")
        object.__setattr__(self, "data", bytes(self.data))

    def as_tuple(self) -> Tuple[str, int, bytes]:
        return (self.target, self.value, self.data)


@dataclass(frozen=True)
class ChainCalls:
    """Ordered calls to run on one chain."""
    chain_id: int
    calls: Tuple[Call, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "calls", tuple(self.calls))


def encode_calls(calls: Iterable[Call]) -> bytes:
    return abi_encode([CALL_ARRAY], [[call.as_tuple() for call in calls]])


def decode_calls(data: bytes) -> List[Call]:
    try:
        (raw,) = abi_decode([CALL_ARRAY], bytes(data))
    except DecodingError as exc:
        raise ABIEncodingError(f"Invalid Call[] encoding: {exc}") from exc
    return [Call(target, value, payload) for target, value, payload in raw]


def encode_chain_calls(chain_calls: Iterable[ChainCalls]) -> bytes:
    return abi_encode(
        [CHAIN_CALLS_ARRAY],
        [[(group.chain_id, [call.as_tuple() for call in group.calls]) for group in chain_calls]],
    )


def decode_chain_calls(data: bytes) -> List[ChainCalls]:
    try:
        (raw,) = abi_decode([CHAIN_CALLS_ARRAY], bytes(data))
    except DecodingError as exc:
        raise ABIEncodingError(f"Invalid ChainCalls[] encoding: {exc}") from exc
    return [
        ChainCalls(chain_id, tuple(Call(t, v, d) for t, v, d in calls))
        for chain_id, calls in raw
    ]


# ==================== Bridge Message ====================


@dataclass(frozen=True)
class AccumulatorMessage:
    """Payload carried by a bridge deposit into the accumulator."""
    input_token: str
    output_token: str
    recipient: str
    min_input: int
    min_output: int
    swap_calls: Tuple[Call, ...] = ()
    nonce: int = 0

    def encode(self) -> bytes:
        return abi_encode(
            MESSAGE_TYPES,
            [
                to_checksum_address(self.input_token),
                to_checksum_address(self.output_token),
                to_checksum_address(self.recipient),
                self.min_input,
                self.min_output,
                [call.as_tuple() for call in self.swap_calls],
                self.nonce,
            ],
        )

    @classmethod
    def decode(cls, data: bytes) -> "AccumulatorMessage":
        try:
            values = abi_decode(MESSAGE_TYPES, bytes(data))
        except DecodingError as exc:
            raise ABIEncodingError(f"Invalid accumulator message: {exc}") from exc
        input_token, output_token, recipient, min_input, min_output, calls, nonce = values
        return cls(
            input_token=to_checksum_address(input_token),
            output_token=to_checksum_address(output_token),
            recipient=to_checksum_address(recipient),
            min_input=min_input,
            min_output=min_output,
            swap_calls=tuple(Call(t, v, d) for t, v, d in calls),
            nonce=nonce,
        )

    def job_id(self, owner: str) -> bytes:
        return compute_job_id(
            owner,
            self.input_token,
            self.output_token,
            self.recipient,
            self.min_input,
            self.min_output,
            self.swap_calls,
        )


def compute_job_id(
    owner: str,
    input_token: str,
    output_token: str,
    recipient: str,
    min_input: int,
    min_output: int,
    swap_calls: Sequence[Call] = (),
) -> bytes:
    """keccak256(abi.encode(owner, inputToken, outputToken, recipient, minInput, minOutput, swapCalls))."""
    encoded = abi_encode(
        JOB_ID_TYPES,
        [
            to_checksum_address(owner),
            to_checksum_address(input_token),
            to_checksum_address(output_token),
            to_checksum_address(recipient),
            min_input,
            min_output,
            [call.as_tuple() for call in swap_calls],
        ],
    )
    return keccak(encoded)


# ==================== Calldata ====================


def initialize_calldata(job_id: bytes, input_token: str) -> bytes:
    return selector(ACCUMULATOR_SIGNATURES["initialize"]) + abi_encode(
        ["bytes32", "address"], [job_id, to_checksum_address(input_token)]
    )


def register_deposit_calldata(job_id: bytes, chain_id: int, amount: int, depositor: str) -> bytes:
    return selector(ACCUMULATOR_SIGNATURES["register_deposit"]) + abi_encode(
        ["bytes32", "uint256", "uint256", "address"],
        [job_id, chain_id, amount, to_checksum_address(depositor)],
    )


def mark_accumulated_calldata(job_id: bytes, required_amount: int) -> bytes:
    return selector(ACCUMULATOR_SIGNATURES["mark_accumulated"]) + abi_encode(
        ["bytes32", "uint256"], [job_id, required_amount]
    )


def approve_calldata(job_id: bytes) -> bytes:
    return selector(ACCUMULATOR_SIGNATURES["approve"]) + abi_encode(["bytes32"], [job_id])


def execute_calldata(job_id: bytes, chain_calls: Iterable[ChainCalls]) -> bytes:
    return selector(ACCUMULATOR_SIGNATURES["execute"]) + abi_encode(
        ["bytes32", CHAIN_CALLS_ARRAY],
        [job_id, [(g.chain_id, [c.as_tuple() for c in g.calls]) for g in chain_calls]],
    )


def refund_calldata(job_id: bytes) -> bytes:
    return selector(ACCUMULATOR_SIGNATURES["refund"]) + abi_encode(["bytes32"], [job_id])


def execute_chain_calls_calldata(chain_calls: Iterable[ChainCalls]) -> bytes:
    return selector(ACCUMULATOR_SIGNATURES["execute_chain_calls"]) + abi_encode(
        ["bytes"], [encode_chain_calls(chain_calls)]
    )


def erc20_transfer_calldata(recipient: str, amount: int) -> bytes:
    return selector(ERC20_TRANSFER) + abi_encode(
        ["address", "uint256"], [to_checksum_address(recipient), amount]
    )


def erc20_balance_of_calldata(holder: str) -> bytes:
    return selector(ERC20_BALANCE_OF) + abi_encode(["address"], [to_checksum_address(holder)])


# ==================== Revert Payloads ====================


def encode_error(reason: str) -> bytes:
    """Solidity ``Error(string)`` revert payload."""
    return ERROR_SELECTOR + abi_encode(["string"], [reason])


def decode_error(payload: bytes) -> Optional[str]:
    """Reason string of an ``Error(string)`` payload, or None for other payloads."""
    if len(payload) < 4 or payload[:4] != ERROR_SELECTOR:
        return None
    try:
        (reason,) = abi_decode(["string"], payload[4:])
    except DecodingError:
        return None
    return reason
