"""Nullifier generation and authenticated encryption.

A nullifier is a one-time token derived from a wallet address, the issue
time and a fresh random salt:

    nullifier = SHA-256(wallet_address[20] || timestamp_ms[8, big-endian] || salt[32])

Its disclosure on redemption marks exactly one spend note as spent without
saying which commitment it belongs to. Alongside the raw digest the engine
keeps an AES-256-GCM ciphertext of it under the process key, so a holder of
the key can later confirm that a presented (nullifier, ciphertext) pair was
produced here and not tampered with.

Ciphertext layout (hex, '0x' prefixed):

    version[1] || nonce[12] || ciphertext[32] || tag[16]

The version byte is also bound as associated data.

Key Rotation:
    ``KeyMaterial.rotate()`` returns a new key with the next version number.
    Nullifiers encrypted under an older key no longer verify against an
    engine built with the rotated key; there is no key ring.

Example:
    >>> engine = NullifierEngine(KeyMaterial.generate())
    >>> data = engine.generate("0x" + "ab" * 20)
    >>> engine.verify(data.nullifier, data.encrypted_nullifier)
    True
"""

import logging
import os
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from spendnote.exceptions import EncryptionError, InvalidInputError
from spendnote.utils.encoding import bytes_to_hex, hex_to_bytes, is_hex_of_length
from spendnote.utils.hash import sha256

logger = logging.getLogger(__name__)

ADDRESS_SIZE = 20
SALT_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
DIGEST_SIZE = 32


@dataclass(frozen=True)
class KeyMaterial:
    """
    Symmetric key used to encrypt nullifiers.

    Created once per process and never mutated; rotation produces a new value.
    """

    key: bytes
    version: int = 1

    KEY_SIZE = 32

    def __post_init__(self):
        if not isinstance(self.key, bytes) or len(self.key) != self.KEY_SIZE:
            raise ValueError("Key must be 32 bytes")
        if not 0 <= self.version <= 255:
            raise ValueError("Key version must fit in one byte")

    @classmethod
    def generate(cls) -> "KeyMaterial":
        """Create fresh random key material."""
        return cls(key=os.urandom(cls.KEY_SIZE))

    @classmethod
    def from_hex(cls, key_hex: str, version: int = 1) -> "KeyMaterial":
        """Load key material from a hex-encoded 32-byte key."""
        try:
            key = hex_to_bytes(key_hex)
        except ValueError as e:
            raise ValueError(f"Invalid nullifier key: {e}")
        return cls(key=key, version=version)

    @classmethod
    def from_settings(cls, key_hex: Optional[str]) -> "KeyMaterial":
        """Use the configured key when present, otherwise generate one."""
        if key_hex:
            return cls.from_hex(key_hex)
        logger.info("No nullifier key configured; generated an ephemeral process key")
        return cls.generate()

    def rotate(self) -> "KeyMaterial":
        """Return new random key material with the next version number."""
        return KeyMaterial(key=os.urandom(self.KEY_SIZE), version=(self.version + 1) % 256)

    def __repr__(self) -> str:
        return f"KeyMaterial(version={self.version})"


@dataclass(frozen=True)
class NullifierData:
    """A generated nullifier together with its ciphertext."""

    nullifier: str  # '0x' + 64 hex chars
    encrypted_nullifier: str  # '0x' + hex of version || nonce || ciphertext || tag
    timestamp: int  # milliseconds since epoch

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "nullifier": self.nullifier,
            "encryptedNullifier": self.encrypted_nullifier,
            "timestamp": self.timestamp,
        }


def derive_nullifier(wallet_address: bytes, timestamp: int, salt: bytes) -> bytes:
    """
    Compute the nullifier digest from its three inputs.

    Args:
        wallet_address: 20-byte address
        timestamp: Issue time in milliseconds
        salt: 32 random bytes

    Returns:
        bytes: 32-byte SHA-256 digest
    """
    return sha256(wallet_address + timestamp.to_bytes(8, byteorder='big') + salt)


def validate_wallet_address(wallet_address: str) -> bytes:
    """
    Check that an address is a 0x-prefixed 20-byte hex string.

    Returns:
        bytes: The decoded address

    Raises:
        InvalidInputError: If the address is malformed
    """
    if not is_hex_of_length(wallet_address, ADDRESS_SIZE):
        raise InvalidInputError(f"Invalid wallet address: {wallet_address!r}")
    return hex_to_bytes(wallet_address)


class NullifierEngine:
    """
    Produces and checks encrypted nullifiers.

    The engine owns a read-only ``KeyMaterial``; the only state it carries.
    """

    def __init__(self, key_material: KeyMaterial):
        self._key_material = key_material
        self._aead = AESGCM(key_material.key)

    @property
    def key_version(self) -> int:
        return self._key_material.version

    def generate(self, wallet_address: str) -> NullifierData:
        """
        Generate a fresh nullifier for one spend intent.

        Args:
            wallet_address: 0x-prefixed 20-byte hex address

        Returns:
            NullifierData: Digest, ciphertext and issue time

        Raises:
            InvalidInputError: If the address is malformed
            EncryptionError: If encryption fails
        """
        address_bytes = validate_wallet_address(wallet_address)
        timestamp = int(time.time() * 1000)
        salt = secrets.token_bytes(SALT_SIZE)

        digest = derive_nullifier(address_bytes, timestamp, salt)

        return NullifierData(
            nullifier=bytes_to_hex(digest),
            encrypted_nullifier=bytes_to_hex(self._encrypt(digest)),
            timestamp=timestamp,
        )

    def verify(self, nullifier: str, encrypted_nullifier: str) -> bool:
        """
        Decrypt ``encrypted_nullifier`` and compare it with ``nullifier``.

        Returns:
            bool: True only if decryption authenticates and the digests match.
                  Never raises.
        """
        try:
            expected = hex_to_bytes(nullifier)
            blob = hex_to_bytes(encrypted_nullifier)
        except (ValueError, TypeError, AttributeError):
            return False

        if len(blob) != 1 + NONCE_SIZE + DIGEST_SIZE + TAG_SIZE:
            return False

        version = blob[0]
        if version != self._key_material.version:
            logger.debug("Nullifier encrypted under key version %d, engine has %d",
                         version, self._key_material.version)
            return False

        nonce = blob[1:1 + NONCE_SIZE]
        try:
            decrypted = self._aead.decrypt(nonce, blob[1 + NONCE_SIZE:], bytes([version]))
        except InvalidTag:
            return False

        return secrets.compare_digest(decrypted, expected)

    def _encrypt(self, digest: bytes) -> bytes:
        version = bytes([self._key_material.version])
        nonce = os.urandom(NONCE_SIZE)
        try:
            sealed = self._aead.encrypt(nonce, digest, version)
        except Exception as e:
            raise EncryptionError(f"Failed to encrypt nullifier: {e}")
        return version + nonce + sealed
