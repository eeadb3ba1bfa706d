"""
Knot Core Module

Authorization signing, account provisioning, configuration and the contract
layer executed against host ledgers.
"""

__all__ = []
