"""Wallet message signatures (Ethereum personal-message scheme).

Claims are authorised by the recipient signing a text message with their
wallet key. The scheme is the one wallets expose as ``personal_sign``:

    digest = keccak256("\\x19Ethereum Signed Message:\\n" + len(message) + message)
    signature = r[32] || s[32] || v[1]      (v in {27, 28} or {0, 1})

The signer's address is the last 20 bytes of keccak256 over the 64-byte
uncompressed public key recovered from (digest, r, s, v).
"""

import hashlib
import logging
from typing import Union

from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.util import sigdecode_string, sigencode_string_canonize

from spendnote.exceptions import InvalidInputError
from spendnote.utils.encoding import bytes_to_hex, hex_to_bytes
from spendnote.utils.hash import keccak256

logger = logging.getLogger(__name__)

MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n"
SIGNATURE_SIZE = 65


def message_digest(message: Union[str, bytes]) -> bytes:
    """Compute the prefixed Keccak-256 digest that wallets sign."""
    if isinstance(message, str):
        message = message.encode('utf-8')
    return keccak256(MESSAGE_PREFIX + str(len(message)).encode('ascii') + message)


def public_key_to_address(verifying_key: VerifyingKey) -> str:
    """Derive the lowercase 0x address of a secp256k1 public key."""
    return bytes_to_hex(keccak256(verifying_key.to_string())[-20:])


def _load_private_key(private_key: Union[str, bytes]) -> SigningKey:
    if isinstance(private_key, str):
        try:
            private_key = hex_to_bytes(private_key)
        except ValueError as e:
            raise InvalidInputError(f"Invalid private key: {e}")
    if len(private_key) != 32:
        raise InvalidInputError("Private key must be 32 bytes")
    return SigningKey.from_string(private_key, curve=SECP256k1)


def address_from_private_key(private_key: Union[str, bytes]) -> str:
    """Return the wallet address controlled by ``private_key``."""
    return public_key_to_address(_load_private_key(private_key).get_verifying_key())


def sign_message(message: Union[str, bytes], private_key: Union[str, bytes]) -> str:
    """
    Sign a personal message.

    Args:
        message: Text (or bytes) to sign
        private_key: 32-byte secp256k1 key (bytes or hex)

    Returns:
        str: 0x-prefixed 65-byte signature with v in {27, 28}
    """
    signing_key = _load_private_key(private_key)
    digest = message_digest(message)

    rs = signing_key.sign_digest_deterministic(
        digest, hashfunc=hashlib.sha256, sigencode=sigencode_string_canonize
    )

    own_key = signing_key.get_verifying_key().to_string()
    candidates = VerifyingKey.from_public_key_recovery_with_digest(
        rs, digest, curve=SECP256k1, hashfunc=hashlib.sha256, sigdecode=sigdecode_string
    )
    for recovery_id, candidate in enumerate(candidates):
        if candidate.to_string() == own_key:
            return bytes_to_hex(rs + bytes([27 + recovery_id]))

    # Unreachable for a well-formed key pair
    raise InvalidInputError("Could not determine recovery id for signature")


def recover_address(message: Union[str, bytes], signature: str) -> str:
    """
    Recover the signer's address from a personal-message signature.

    Raises:
        InvalidInputError: If the signature is malformed or recovery fails
    """
    try:
        raw = hex_to_bytes(signature)
    except (ValueError, AttributeError) as e:
        raise InvalidInputError(f"Signature is not hex: {e}")

    if len(raw) != SIGNATURE_SIZE:
        raise InvalidInputError(f"Signature must be {SIGNATURE_SIZE} bytes")

    v = raw[64]
    recovery_id = v - 27 if v >= 27 else v
    if recovery_id not in (0, 1):
        raise InvalidInputError(f"Invalid recovery byte: {v}")

    order = SECP256k1.order
    r, s = sigdecode_string(raw[:64], order)
    if not (0 < r < order and 0 < s < order):
        raise InvalidInputError("Signature scalars out of range")

    try:
        candidates = VerifyingKey.from_public_key_recovery_with_digest(
            raw[:64], message_digest(message), curve=SECP256k1,
            hashfunc=hashlib.sha256, sigdecode=sigdecode_string,
        )
    except Exception as e:
        raise InvalidInputError(f"Public key recovery failed: {e}")

    if recovery_id >= len(candidates):
        raise InvalidInputError("Public key recovery failed")

    return public_key_to_address(candidates[recovery_id])


def verify_signature(message: Union[str, bytes], signature: str, expected_address: str) -> bool:
    """
    Check that ``signature`` over ``message`` was made by ``expected_address``.

    Address comparison is case-insensitive. Any malformed input yields False.
    """
    if not isinstance(expected_address, str):
        return False
    try:
        recovered = recover_address(message, signature)
    except InvalidInputError as e:
        logger.debug("Signature rejected: %s", e)
        return False
    return recovered.lower() == expected_address.lower()
