"""Execution primitives shared by the contract implementations."""

from .exceptions import ExecutionReverted, OutOfGas, VMExecutionError

__all__ = ["ExecutionReverted", "OutOfGas", "VMExecutionError"]
