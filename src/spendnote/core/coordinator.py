"""Spend coordinator: the issue and claim flows.

ISSUE:
    1. Generate an encrypted nullifier for the sender's wallet
    2. Build the spend note
    3. Append it to the commitment tree (persisted before returning)
    4. Take its inclusion proof against the new root
    5. Prove the spend with the proof broker
    6. Register the note on the ledger
    7. Push the local root to the ledger if they differ

    Any failure aborts the remaining steps and is reported as ``IssueError``.
    A note committed locally but never registered is picked up by
    ``reconcile`` on the next start.

CLAIM:
    1. Parse the claim link (malformed / expired are outcomes, not errors)
    2. Rebuild the canonical claim message for the claimant
    3. Verify the claimant's signature
    4. Ask the ledger whether the nullifier is already spent
    5. Submit the spend

    The signature check precedes every state-changing ledger call and the
    spent check precedes submission.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from spendnote.config import Settings
from spendnote.core.claim_link import ClaimLinkProtocol
from spendnote.core.ledger import LedgerClient
from spendnote.core.merkle_tree import CommitmentTree
from spendnote.core.notes import SpendNote
from spendnote.core.prover import MerklePath, ProofBroker, SpendProof
from spendnote.crypto.nullifier import KeyMaterial, NullifierData, NullifierEngine, validate_wallet_address
from spendnote.exceptions import (
    AlreadyRegisteredError,
    AlreadySpentError,
    ExpiredError,
    InvalidInputError,
    InvalidLinkError,
    InvalidSignatureError,
    IssueError,
    LedgerUnavailableError,
    MalformedError,
    SpendNoteError,
)
from spendnote.models.schemas import ClaimStatus
from spendnote.storage.database import LeafStore, SQLLeafStore

logger = logging.getLogger(__name__)


@dataclass
class IssueReceipt:
    """Result of a completed issue flow."""

    spend_note: SpendNote
    nullifier_data: NullifierData
    note_hash: str
    leaf_index: int
    merkle_root: str
    merkle_proof: List[str]
    proof: SpendProof
    receipt_id: str
    root_synced: bool

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "note_hash": self.note_hash,
            "leaf_index": self.leaf_index,
            "merkle_root": self.merkle_root,
            "merkle_proof": list(self.merkle_proof),
            "nullifier": self.nullifier_data.nullifier,
            "receipt_id": self.receipt_id,
            "root_synced": self.root_synced,
            "mock_proof": self.proof.is_mock,
        }


@dataclass
class IssuedLink:
    """A claim link together with the issue receipt behind it."""

    link: str
    token: str
    receipt: IssueReceipt
    expires_at: int

    @property
    def note_hash(self) -> str:
        return self.receipt.note_hash

    @property
    def nullifier_data(self):
        return self.receipt.nullifier_data


@dataclass
class ClaimResult:
    """Outcome of a claim attempt."""

    status: ClaimStatus
    message: str
    receipt_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == ClaimStatus.CLAIMED

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status.value,
            "message": self.message,
            "receipt_id": self.receipt_id,
        }


@dataclass
class NoteInfo:
    """What a recipient learns about a link before claiming."""

    is_valid: bool
    note_hash: Optional[str] = None
    amount: Optional[int] = None
    is_spent: Optional[bool] = None
    error: Optional[str] = None


@dataclass
class ReconcileReport:
    """Outcome of re-syncing local state with the ledger."""

    registered: List[str] = field(default_factory=list)
    root_updated: bool = False


_CLAIM_ERRORS = {
    ClaimStatus.EXPIRED: ExpiredError,
    ClaimStatus.MALFORMED: MalformedError,
    ClaimStatus.INVALID_SIGNATURE: InvalidSignatureError,
    ClaimStatus.ALREADY_CLAIMED: AlreadySpentError,
}


class SpendCoordinator:
    """Composes nullifiers, the commitment tree, proofs, the ledger and claim links."""

    def __init__(self, engine: NullifierEngine, tree: CommitmentTree, broker: ProofBroker,
                 ledger: LedgerClient, links: ClaimLinkProtocol,
                 default_amount: int = 10**18, link_ttl_minutes: int = 60):
        self.engine = engine
        self.tree = tree
        self.broker = broker
        self.ledger = ledger
        self.links = links
        self.default_amount = default_amount
        self.link_ttl_minutes = link_ttl_minutes
        self._sync_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, ledger: LedgerClient,
                      store: Optional[LeafStore] = None) -> "SpendCoordinator":
        """
        Wire a coordinator from configuration.

        Raises:
            StorageUnavailableError: If the configured database cannot be opened
            ProofBackendUnavailableError: If the proof backend cannot be used
        """
        return cls(
            engine=NullifierEngine(KeyMaterial.from_settings(settings.nullifier_key_hex)),
            tree=CommitmentTree(store if store is not None else SQLLeafStore(settings.database_url)),
            broker=ProofBroker.from_settings(settings),
            ledger=ledger,
            links=ClaimLinkProtocol(base_url=settings.claim_base_url),
            default_amount=settings.default_amount,
            link_ttl_minutes=settings.link_ttl_minutes,
        )

    async def start(self, reconcile: bool = True) -> Optional[ReconcileReport]:
        """
        Rebuild the tree from storage and optionally re-sync with the ledger.

        Storage failures are fatal. A ledger outage during reconciliation is
        logged and left for the next start.
        """
        await self.tree.initialize()
        if not reconcile:
            return None
        try:
            return await self.reconcile()
        except LedgerUnavailableError as e:
            logger.warning("Ledger unavailable during startup reconcile: %s", e)
            return None

    async def reconcile(self) -> ReconcileReport:
        """Register locally committed notes the ledger does not know and sync the root."""
        report = ReconcileReport()
        for leaf in self.tree.leaves:
            if await self.ledger.get_spend_note(leaf.hash) is not None:
                continue
            try:
                await self.ledger.submit_spend_note_creation(leaf.hash, leaf.spend_note.amount)
                report.registered.append(leaf.hash)
            except AlreadyRegisteredError:
                pass
        if report.registered:
            logger.info("Registered %d note(s) missing from the ledger", len(report.registered))
        report.root_updated = await self.sync_root()
        return report

    async def sync_root(self) -> bool:
        """
        Push the local root to the ledger when they differ.

        Returns:
            bool: True if the ledger root was updated
        """
        async with self._sync_lock:
            ledger_root = await self.ledger.get_root()
            local_root = self.tree.get_root()
            if ledger_root.lower() == local_root.lower():
                return False
            await self.ledger.update_root(local_root)
            logger.info("Ledger root updated %s -> %s", ledger_root, local_root)
            return True

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    async def issue(self, wallet_address: str, amount: Optional[int] = None,
                    proof_timeout: Optional[float] = None) -> IssueReceipt:
        """
        Run the issue flow for one spend note.

        Raises:
            InvalidInputError: If the address or amount is malformed
            IssueError: If any later step fails; ``step`` names it
        """
        amount = self.default_amount if amount is None else amount
        validate_wallet_address(wallet_address)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvalidInputError("Amount must be a non-negative integer")

        step = "nullifier"
        try:
            nullifier_data = self.engine.generate(wallet_address)
            spend_note = SpendNote(
                wallet_address=wallet_address,
                nullifier=nullifier_data.nullifier,
                amount=amount,
                timestamp=nullifier_data.timestamp,
            )

            step = "commit"
            note_hash = await self.tree.add_spend_note(spend_note)

            step = "merkle_proof"
            path, indices = self.tree.get_proof_with_indices(note_hash)
            merkle_root = self.tree.get_root()
            leaf_index = self.tree.index_of(note_hash)

            step = "prove"
            proof = await self.broker.prove_spend(
                wallet_address, amount, MerklePath(path, indices), merkle_root,
                timeout=proof_timeout,
            )

            step = "submit"
            try:
                receipt_id = await self.ledger.submit_spend_note_creation(note_hash, amount)
            except AlreadyRegisteredError:
                logger.info("Note %s already registered on ledger", note_hash)
                receipt_id = "already-registered"

            step = "sync_root"
            root_synced = await self.sync_root()

        except InvalidInputError:
            raise
        except SpendNoteError as e:
            logger.error("Issue flow failed at %s: %s", step, e)
            raise IssueError(step, str(e), retryable=isinstance(e, LedgerUnavailableError)) from e

        return IssueReceipt(
            spend_note=spend_note,
            nullifier_data=nullifier_data,
            note_hash=note_hash,
            leaf_index=leaf_index,
            merkle_root=merkle_root,
            merkle_proof=path,
            proof=proof,
            receipt_id=receipt_id,
            root_synced=root_synced,
        )

    async def generate_link(self, wallet_address: str, amount: Optional[int] = None,
                            ttl_minutes: Optional[int] = None) -> IssuedLink:
        """Issue a note and wrap it in a shareable claim link."""
        ttl = ttl_minutes or self.link_ttl_minutes
        receipt = await self.issue(wallet_address, amount)
        token = self.links.generate(receipt.note_hash, receipt.nullifier_data,
                                    receipt.merkle_proof, ttl)
        link = self.links.parse(token)
        return IssuedLink(
            link=self.links.build_url(token),
            token=token,
            receipt=receipt,
            expires_at=link.expires_at,
        )

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def claim_message(self, token: str, claimant: str) -> str:
        """
        Canonical message ``claimant`` must sign to redeem ``token``.

        Raises:
            InvalidLinkError: If the link is malformed or expired
        """
        return self.links.claim_message(self.links.parse(self.links.extract_token(token)), claimant)

    async def claim(self, token: str, signature: str, recipient_address: str) -> ClaimResult:
        """
        Redeem a claim link for ``recipient_address``.

        User-facing rejections come back as a ``ClaimResult``.

        Raises:
            LedgerUnavailableError: If the ledger cannot be reached
        """
        try:
            link = self.links.parse(self.links.extract_token(token))
        except ExpiredError:
            logger.info("Claim rejected: link expired")
            return ClaimResult(ClaimStatus.EXPIRED, "Link has expired")
        except MalformedError as e:
            logger.info("Claim rejected: malformed link (%s)", e)
            return ClaimResult(ClaimStatus.MALFORMED, "Invalid link")

        message = self.links.claim_message(link, recipient_address)
        if not self.links.verify_signature(message, signature, recipient_address):
            logger.info("Claim rejected: signature does not match claimant")
            return ClaimResult(ClaimStatus.INVALID_SIGNATURE, "Invalid signature")

        if await self.ledger.is_nullifier_spent(link.nullifier):
            logger.info("Claim rejected: nullifier already spent")
            return ClaimResult(ClaimStatus.ALREADY_CLAIMED, "This spend note has already been claimed")

        merkle_proof = list(link.merkle_proof)
        if self.tree.get_leaf(link.note_hash) is not None:
            # The link's proof was taken against the root at issue time
            merkle_proof = self.tree.get_proof(link.note_hash)
            await self.sync_root()

        try:
            receipt_id = await self.ledger.submit_spend(
                link.note_hash, link.nullifier, recipient_address, merkle_proof
            )
        except AlreadyRegisteredError:
            return ClaimResult(ClaimStatus.ALREADY_CLAIMED, "This spend note has already been claimed")

        logger.info("Spend note %s claimed", link.note_hash)
        return ClaimResult(ClaimStatus.CLAIMED, "Spend note claimed successfully", receipt_id)

    async def claim_or_raise(self, token: str, signature: str, recipient_address: str) -> str:
        """
        Like ``claim`` but raises on rejection.

        Returns:
            str: The ledger receipt id

        Raises:
            MalformedError, ExpiredError, InvalidSignatureError, AlreadySpentError
        """
        result = await self.claim(token, signature, recipient_address)
        if not result.success:
            raise _CLAIM_ERRORS[result.status](result.message)
        return result.receipt_id

    async def get_note_info(self, token: str) -> NoteInfo:
        """Describe the note behind a claim link without claiming it."""
        try:
            link = self.links.parse(self.links.extract_token(token))
        except InvalidLinkError as e:
            return NoteInfo(is_valid=False, error=str(e))

        note = await self.ledger.get_spend_note(link.note_hash)
        is_spent = await self.ledger.is_nullifier_spent(link.nullifier)
        return NoteInfo(
            is_valid=True,
            note_hash=link.note_hash,
            amount=note.amount if note is not None else None,
            is_spent=is_spent,
        )

    def verify_spend_note(self, leaf_hash: str, proof: List[str], nullifier: str,
                          encrypted_nullifier: str) -> bool:
        """Check the nullifier ciphertext and the note's inclusion against the current root."""
        if not self.engine.verify(nullifier, encrypted_nullifier):
            return False
        return self.tree.verify_leaf(leaf_hash, proof)

    async def get_state(self) -> dict:
        """Local tree state plus the ledger root when reachable."""
        try:
            ledger_root = await self.ledger.get_root()
        except LedgerUnavailableError:
            ledger_root = None
        return {
            "merkle_root": self.tree.get_root(),
            "num_leaves": len(self.tree),
            "ledger_root": ledger_root,
        }
