"""Cryptographic primitives module"""

from spendnote.crypto.nullifier import (
    KeyMaterial,
    NullifierData,
    NullifierEngine,
    derive_nullifier,
    validate_wallet_address,
)

__all__ = [
    'KeyMaterial',
    'NullifierData',
    'NullifierEngine',
    'derive_nullifier',
    'validate_wallet_address',
]
