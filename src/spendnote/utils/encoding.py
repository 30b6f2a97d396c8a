"""Encoding and decoding utilities."""

import re

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


def bytes_to_hex(data: bytes) -> str:
    """
    Convert bytes to hexadecimal string.

    Args:
        data: Bytes to convert

    Returns:
        str: Hexadecimal string with '0x' prefix
    """
    return "0x" + data.hex()


def hex_to_bytes(hex_str: str) -> bytes:
    """
    Convert hexadecimal string to bytes.

    Args:
        hex_str: Hexadecimal string (with or without '0x' prefix)

    Returns:
        bytes: Decoded bytes

    Raises:
        ValueError: If hex string is invalid
    """
    if hex_str.startswith(("0x", "0X")):
        hex_str = hex_str[2:]

    if len(hex_str) % 2 != 0:
        raise ValueError("Hex string must have even number of characters")

    return bytes.fromhex(hex_str)


def is_hex_of_length(value: str, num_bytes: int) -> bool:
    """Check that ``value`` is a 0x-prefixed hex string of exactly ``num_bytes`` bytes."""
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        return False
    body = value[2:]
    return len(body) == num_bytes * 2 and bool(_HEX_RE.match(body))


def int_to_fixed_bytes(value: int, width: int) -> bytes:
    """
    Encode a non-negative integer as big-endian bytes of a fixed width.

    Raises:
        ValueError: If value is negative or does not fit
    """
    if value < 0:
        raise ValueError("Value must be non-negative")
    try:
        return value.to_bytes(width, byteorder='big')
    except OverflowError:
        raise ValueError(f"Value does not fit in {width} bytes")
