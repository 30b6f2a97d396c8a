"""Wallet signature module."""

from spendnote.security.signatures import (
    address_from_private_key,
    message_digest,
    recover_address,
    sign_message,
    verify_signature,
)

__all__ = [
    "address_from_private_key",
    "message_digest",
    "recover_address",
    "sign_message",
    "verify_signature",
]
