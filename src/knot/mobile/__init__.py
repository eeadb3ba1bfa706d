"""
Knot Mobile Module

Passkey ceremony interfaces, verification and the platform credential store.
"""

__all__ = []
