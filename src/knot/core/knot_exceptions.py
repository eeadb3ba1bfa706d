"""
Knot exception hierarchy.

Provides typed exceptions for passkey verification, authorization signing,
collaborator resources and contract execution so callers can tell a retryable
ceremony failure from a contract guard violation without parsing messages.
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class KnotError(Exception):
    """Base exception for all Knot errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the caller may retry the operation
    """

    recoverable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if recoverable is not None:
            self.recoverable = recoverable


# ==================== Configuration & Lifecycle Errors ====================


class ConfigurationError(KnotError):
    """Raised when required configuration is missing or invalid."""
    pass


class BootstrapError(KnotError):
    """Raised when runtime initialization fails at launch."""
    pass


# ==================== Authorization Errors ====================


class AuthorizationFailed(KnotError):
    """Raised when a signing or passkey prompt is refused or fails.

    Produced by the presentation layer (passkey ceremony) and by signing
    capabilities; it is propagated unchanged, never re-wrapped.
    """

    recoverable = True

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        text = (
            f"Authorization failed ({code}): {message}"
            if code is not None
            else f"Authorization failed: {message}"
        )
        super().__init__(text, details={"code": code, "reason": message})
        self.code = code
        self.reason = message


# ==================== Collaborator Resource Errors ====================


class ResourceError(KnotError):
    """Raised by external collaborators (credential store, endpoint registry).

    These are surfaced to callers unchanged.
    """
    pass


class UnknownChain(ResourceError):
    """Raised when no endpoints or execution context exist for a chain."""

    def __init__(self, chain_id: int) -> None:
        super().__init__(
            f"No endpoints configured for chainId {chain_id}.",
            details={"chain_id": chain_id},
        )
        self.chain_id = chain_id
