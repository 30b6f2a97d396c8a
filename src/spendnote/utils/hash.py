"""Cryptographic hash utilities."""

import hashlib
from typing import Union

from Crypto.Hash import keccak


def sha256(data: Union[bytes, str]) -> bytes:
    """
    Compute SHA-256 hash of data.

    Args:
        data: Bytes or string to hash

    Returns:
        bytes: 32-byte SHA-256 hash
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).digest()


def keccak256(data: Union[bytes, str]) -> bytes:
    """
    Compute Keccak-256 (the pre-standard SHA-3 used by Ethereum).

    Args:
        data: Bytes or string to hash

    Returns:
        bytes: 32-byte digest
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    return keccak.new(digest_bits=256, data=data).digest()


def sorted_pair_hash(a: bytes, b: bytes) -> bytes:
    """
    Compute the parent of two sibling digests.

    The pair is hashed in ascending byte order, SHA-256(min || max), so the
    parent does not depend on which child sits on the left.

    Args:
        a: First child hash (32 bytes)
        b: Second child hash (32 bytes)

    Returns:
        bytes: Parent hash (32 bytes)
    """
    if not isinstance(a, bytes) or len(a) != 32:
        raise ValueError("Child hash must be 32 bytes")
    if not isinstance(b, bytes) or len(b) != 32:
        raise ValueError("Child hash must be 32 bytes")

    if a <= b:
        return sha256(a + b)
    return sha256(b + a)
