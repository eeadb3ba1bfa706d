"""
Contracts executed against a host ledger.
"""

from .accumulator import AccumulatorEvent, JobAccumulator, JobState, JobStatus
from .call_executor import Exec
from .delegated_account import DelegatedAccount
from .host_ledger import HostLedger, InMemoryLedger

__all__ = [
    "AccumulatorEvent",
    "DelegatedAccount",
    "Exec",
    "HostLedger",
    "InMemoryLedger",
    "JobAccumulator",
    "JobState",
    "JobStatus",
]
