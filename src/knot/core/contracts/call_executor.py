"""
Exec: bounded low-level external calls.

Return data capture is an explicit second step so a callee returning an
arbitrarily large buffer cannot force the caller to copy it. Revert payloads
are re-raised byte for byte.
"""

from __future__ import annotations

import logging

from ..vm.exceptions import ExecutionReverted
from .host_ledger import HostLedger

logger = logging.getLogger(__name__)


class Exec:
    """Call executor bound to one ledger and one calling contract."""

    def __init__(self, ledger: HostLedger, sender: str) -> None:
        self.ledger = ledger
        self.sender = sender
        self._return_buffer = b""
        self._captured = b""
        self.last_success = True

    def call(self, target: str, value: int, data: bytes, gas_limit: int = 0) -> bool:
        """
        Call ``target`` forwarding exactly ``gas_limit`` gas (all remaining if 0).

        The return buffer is retained by reference; nothing is copied here.
        """
        outcome = self.ledger.call(self.sender, target, value, data, gas_limit)
        self._return_buffer = outcome.return_data
        self.last_success = outcome.success
        if not outcome.success:
            logger.debug(
                "External call failed",
                extra={
                    "event": "exec.call_failed",
                    "chain_id": self.ledger.chain_id,
                    "target": target,
                    "return_size": len(outcome.return_data),
                },
            )
        return outcome.success

    @property
    def return_data_size(self) -> int:
        return len(self._return_buffer)

    def capture_return_data(self, max_len: int = 0) -> bytes:
        """Copy at most ``max_len`` bytes of the last return buffer (0 = all)."""
        if max_len < 0:
            raise ValueError("max_len must be non-negative")
        size = len(self._return_buffer)
        if max_len and size > max_len:
            size = max_len
        self._captured = bytes(memoryview(self._return_buffer)[:size])
        return self._captured

    def revert_with_captured_data(self) -> None:
        """Abort with the captured bytes as the revert payload."""
        raise ExecutionReverted(self._captured)
