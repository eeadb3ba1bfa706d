"""Exceptions raised while executing contract code against a host ledger."""

from __future__ import annotations

from ..knot_exceptions import KnotError


class VMExecutionError(KnotError):
    """Raised when contract execution aborts.

    The host ledger discards every state change made by the aborted frame.
    """
    pass


class ExecutionReverted(VMExecutionError):
    """Raised when a frame aborts with an explicit revert payload.

    ``revert_data`` holds the raw bytes verbatim; nothing decodes or
    re-wraps them on the way out.
    """

    def __init__(self, revert_data: bytes = b"", message: str | None = None) -> None:
        revert_data = bytes(revert_data)
        super().__init__(
            message or f"execution reverted (0x{revert_data.hex()})",
            details={"revert_data": "0x" + revert_data.hex()},
        )
        self.revert_data = revert_data


class OutOfGas(VMExecutionError):
    """Raised by contract code when the forwarded gas is insufficient."""
    pass
