"""Shareable claim links for spend notes.

A claim link lets the sender of a note hand it to a recipient out-of-band.
The link carries everything the recipient needs to redeem the note, encoded
as URL-safe base64 (no padding) of a JSON object:

    {"noteHash", "nullifier", "encryptedNullifier", "merkleProof",
     "timestamp", "expiresAt"}

Lifecycle of a link: Issued -> Claimed | Expired | Invalid. Links are single
use in effect: the first successful claim marks the nullifier as spent on
the ledger.

To claim, the recipient signs the canonical claim message (see
``claim_message``) with their wallet. The message binds the claimant, the
note hash, the nullifier and the link timestamp, so a captured link and
signature cannot be replayed for another claimant or another note.
"""

import base64
import binascii
import json
import logging
import re
import time
from typing import Callable, Optional, Sequence
from urllib.parse import parse_qs, urlencode, urlparse

from pydantic import ValidationError

from spendnote.crypto.nullifier import NullifierData
from spendnote.exceptions import ExpiredError, InvalidInputError, MalformedError
from spendnote.models.schemas import SpendNoteLinkData
from spendnote.security.signatures import verify_signature as verify_wallet_signature

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]+")

CLAIM_MESSAGE_TEMPLATE = (
    "I, {claimant}, am claiming a spend note with hash {note_hash} "
    "and nullifier {nullifier}. Timestamp: {timestamp}"
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def encode_token(payload: dict) -> str:
    """JSON-encode and base64url-encode a payload without padding."""
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def decode_token(token: str) -> dict:
    """
    Reverse ``encode_token``.

    Raises:
        MalformedError: If the token is not base64url JSON of an object
    """
    if not isinstance(token, str) or not token:
        raise MalformedError("Empty claim link")
    if not _TOKEN_RE.fullmatch(token):
        raise MalformedError("Claim link contains characters outside the base64url alphabet")
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.urlsafe_b64decode(padded)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise MalformedError(f"Failed to decode link data: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedError("Link data is not an object")
    return payload


class ClaimLinkProtocol:
    """Generates, parses and authenticates claim links."""

    def __init__(self, base_url: str = "http://localhost:5173/claim",
                 clock: Optional[Callable[[], int]] = None):
        """
        Args:
            base_url: URL the recipient opens; the token goes in ``?data=``
            clock: Returns the current time in milliseconds (defaults to wall clock)
        """
        self.base_url = base_url
        self._clock = clock or _now_ms

    def generate(self, note_hash: str, nullifier_data: NullifierData,
                 merkle_proof: Sequence[str], ttl_minutes: int = 60) -> str:
        """
        Build a claim token. Pure function of its inputs and the current time.

        Returns:
            str: URL-safe token

        Raises:
            InvalidInputError: If the inputs do not form a valid link
        """
        if ttl_minutes <= 0:
            raise InvalidInputError("Link lifetime must be positive")

        now = self._clock()
        try:
            link = SpendNoteLinkData(
                note_hash=note_hash,
                nullifier=nullifier_data.nullifier,
                encrypted_nullifier=nullifier_data.encrypted_nullifier,
                merkle_proof=list(merkle_proof),
                timestamp=now,
                expires_at=now + ttl_minutes * 60 * 1000,
            )
        except ValidationError as e:
            raise InvalidInputError(f"Invalid link data: {e}") from e

        return encode_token(link.to_wire())

    def parse(self, token: str) -> SpendNoteLinkData:
        """
        Decode and validate a claim token.

        Raises:
            MalformedError: If the token cannot be decoded or misses required fields
            ExpiredError: If the link is past its expiry
        """
        payload = decode_token(token)
        try:
            link = SpendNoteLinkData.model_validate(payload)
        except ValidationError as e:
            raise MalformedError(f"Invalid link data structure: {e.error_count()} error(s)") from e

        if link.expires_at < self._clock():
            raise ExpiredError("Link has expired")

        return link

    @staticmethod
    def claim_message(link: SpendNoteLinkData, claimant: str) -> str:
        """Canonical message a claimant signs to redeem ``link``."""
        return CLAIM_MESSAGE_TEMPLATE.format(
            claimant=claimant,
            note_hash=link.note_hash,
            nullifier=link.nullifier,
            timestamp=link.timestamp,
        )

    @staticmethod
    def verify_signature(message: str, signature: str, expected_address: str) -> bool:
        """
        Check a wallet signature over ``message``.

        Returns:
            bool: False for malformed signatures or a different signer
        """
        return verify_wallet_signature(message, signature, expected_address)

    def build_url(self, token: str) -> str:
        """Shareable URL carrying ``token``."""
        return f"{self.base_url}?{urlencode({'data': token})}"

    @staticmethod
    def extract_token(link: str) -> str:
        """
        Return the token from a claim URL, or ``link`` unchanged if it is a bare token.

        Raises:
            MalformedError: If a URL carries no ``data`` parameter
        """
        if "?" not in link and "://" not in link:
            return link
        values = parse_qs(urlparse(link).query).get("data")
        if not values:
            raise MalformedError("Claim URL has no data parameter")
        return values[0]
