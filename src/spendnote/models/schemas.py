"""Pydantic data models for wire formats and the HTTP API."""

from enum import Enum
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

HEX32_PATTERN = r"^0x[0-9a-fA-F]{64}$"
HEX_BYTES_PATTERN = r"^0x(?:[0-9a-fA-F]{2})+$"
PROVER_DIGEST_PATTERN = r"^(?:0x)?[0-9a-fA-F]{64}$"
PROVER_BYTES_PATTERN = r"^(?:0x)?(?:[0-9a-fA-F]{2})+$"
ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"

DigestHex = Annotated[str, Field(pattern=HEX32_PATTERN)]


# ============================================================================
# Claim link payload
# ============================================================================


class SpendNoteLinkData(BaseModel):
    """
    Payload carried inside a claim link.

    Keys are camelCase on the wire. Unknown keys are ignored; missing keys
    fail validation.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    note_hash: str = Field(..., alias="noteHash", pattern=HEX32_PATTERN)
    nullifier: str = Field(..., pattern=HEX32_PATTERN)
    encrypted_nullifier: str = Field(..., alias="encryptedNullifier", pattern=HEX_BYTES_PATTERN)
    merkle_proof: List[DigestHex] = Field(..., alias="merkleProof")
    timestamp: int = Field(..., gt=0, description="Issue time (ms since epoch)")
    expires_at: int = Field(..., alias="expiresAt", gt=0, description="Expiry (ms since epoch)")

    @model_validator(mode="after")
    def _check_window(self) -> "SpendNoteLinkData":
        if self.expires_at <= self.timestamp:
            raise ValueError("expiresAt must be later than timestamp")
        return self

    def to_wire(self) -> dict:
        """Serialize with wire (camelCase) keys."""
        return self.model_dump(by_alias=True)


# ============================================================================
# External prover protocol
# ============================================================================


class ProverMerkleProof(BaseModel):
    """Merkle path in the prover's request format."""

    path: List[str] = Field(..., description="Sibling digests (hex, no prefix)")
    indices: List[bool] = Field(..., description="True where the node is a right child")


class ProveRequest(BaseModel):
    """Request written to the prover's stdin for ``prove``."""

    wallet_address: str
    amount: str = Field(..., pattern=r"^[0-9]+$")
    merkle_proof: ProverMerkleProof
    merkle_root: str


class ProveResponse(BaseModel):
    """Response read from the prover's stdout for ``prove``."""

    receipt: str = Field(..., pattern=PROVER_BYTES_PATTERN)
    merkle_root: str = Field(..., pattern=PROVER_DIGEST_PATTERN)
    nullifier: str = Field(..., pattern=PROVER_DIGEST_PATTERN)
    amount: str = Field(..., pattern=r"^[0-9]+$")


class VerifyRequest(BaseModel):
    """Request written to the prover's stdin for ``verify``."""

    receipt: str
    merkle_root: str
    nullifier: str
    amount: str


# ============================================================================
# HTTP API
# ============================================================================


class IssueRequest(BaseModel):
    """Request model for issuing a spend note."""
    wallet_address: str = Field(..., pattern=ADDRESS_PATTERN, description="Sender wallet")
    amount: Optional[int] = Field(default=None, ge=0, description="Amount in base units")


class IssueResponse(BaseModel):
    """Response model for issuing a spend note."""
    note_hash: str
    leaf_index: int
    merkle_root: str
    nullifier: str
    receipt_id: str
    mock_proof: bool


class LinkRequest(IssueRequest):
    """Request model for issuing a note together with a claim link."""
    ttl_minutes: Optional[int] = Field(default=None, gt=0)


class LinkResponse(BaseModel):
    """Response model for a generated claim link."""
    link: str
    token: str
    note_hash: str
    expires_at: int


class NoteInfoResponse(BaseModel):
    """What a recipient sees before claiming."""
    is_valid: bool
    note_hash: Optional[str] = None
    amount: Optional[int] = None
    is_spent: Optional[bool] = None
    error: Optional[str] = None


class ClaimRequest(BaseModel):
    """Request model for claiming a note from a link."""
    token: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)
    recipient_address: str = Field(..., pattern=ADDRESS_PATTERN)


class ClaimStatus(str, Enum):
    """Outcome of a claim attempt."""
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    EXPIRED = "expired"
    MALFORMED = "malformed"
    INVALID_SIGNATURE = "invalid_signature"


class ClaimResponse(BaseModel):
    """Response model for a claim attempt."""
    success: bool
    status: ClaimStatus
    message: str
    receipt_id: Optional[str] = None


class StateResponse(BaseModel):
    """Current tree and ledger state."""
    merkle_root: str
    num_leaves: int
    ledger_root: Optional[str] = None
