"""
Knot - passkey-secured EOA accounts with cross-chain job accumulation.

Main Components:
- Passkeys: WebAuthn attestation and assertion verification
- Authorization: EIP-7702 delegation signing
- Contracts: delegated account, call executor and job accumulator
- Storage: credential store and wallet seeds
"""

__version__ = "0.1.0"

__all__ = []
