"""Spend proof generation and verification.

Two backends share one interface:

    MockProofBackend      in-process placeholder; random receipt bytes, no
                          cryptographic meaning. Development and tests only.
    ExternalProofBackend  runs an external prover executable per request.

``ProofBroker`` picks one backend at construction and never switches later.
When the external prover is requested but missing, the broker falls back to
the mock backend only if configured to, logging a warning; in production
mode the mock backend is never reachable.

External prover protocol:
    ``<command> prove``   stdin: {"wallet_address", "amount", "merkle_proof": {"path", "indices"},
                                  "merkle_root"}
                          stdout: {"receipt", "merkle_root", "nullifier", "amount"}
    ``<command> verify``  stdin: {"receipt", "merkle_root", "nullifier", "amount"}
                          exit status 0 means the proof is valid

    Digests are hex, amounts decimal strings. A non-zero exit status or an
    unparsable response is always an error. The prover runs in its own
    process group, which is killed on timeout or cancellation.
"""

import asyncio
import logging
import os
import shlex
import shutil
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from pydantic import ValidationError

from spendnote.config import Settings
from spendnote.crypto.nullifier import validate_wallet_address
from spendnote.exceptions import (
    AmountOverflowError,
    InvalidInputError,
    ProofBackendUnavailableError,
    ProofGenerationError,
    ProofGenerationTimeout,
)
from spendnote.models.schemas import ProveRequest, ProveResponse, ProverMerkleProof, VerifyRequest
from spendnote.utils.encoding import bytes_to_hex, hex_to_bytes, is_hex_of_length
from spendnote.utils.hash import sha256

logger = logging.getLogger(__name__)

MOCK = "mock"
EXTERNAL = "external"

# The prover commits the amount as an unsigned 64-bit integer
MAX_PROVER_AMOUNT = 2 ** 64 - 1
MOCK_RECEIPT_SIZE = 128


@dataclass
class MerklePath:
    """Inclusion proof in the form the prover consumes."""

    path: List[str]
    indices: List[bool] = field(default_factory=list)

    def __post_init__(self):
        if not self.indices:
            self.indices = [False] * len(self.path)
        if len(self.indices) != len(self.path):
            raise InvalidInputError("Merkle path and indices differ in length")

    def to_request(self) -> ProverMerkleProof:
        return ProverMerkleProof(
            path=[hex_to_bytes(p).hex() for p in self.path],
            indices=list(self.indices),
        )


@dataclass
class SpendProof:
    """
    Proof that a note in the tree is being spent.

    ``backend`` records which verifier family can check the receipt.
    """

    receipt: bytes
    merkle_root: bytes
    nullifier: bytes
    amount: int
    backend: str

    @property
    def is_mock(self) -> bool:
        return self.backend == MOCK

    def to_dict(self) -> dict:
        """Serialize to dictionary."""
        return {
            "receipt": bytes_to_hex(self.receipt),
            "merkle_root": bytes_to_hex(self.merkle_root),
            "nullifier": bytes_to_hex(self.nullifier),
            "amount": str(self.amount),
            "backend": self.backend,
        }


def _check_inputs(wallet_address: str, amount: int, merkle_root: str) -> None:
    validate_wallet_address(wallet_address)
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise InvalidInputError("Amount must be a non-negative integer")
    if not is_hex_of_length(merkle_root, 32):
        raise InvalidInputError(f"Invalid merkle root: {merkle_root!r}")


class ProofBackend(ABC):
    """Common interface of proof backends."""

    name: str = ""

    @property
    def is_mock(self) -> bool:
        return self.name == MOCK

    @abstractmethod
    async def prove_spend(self, wallet_address: str, amount: int, merkle_proof: MerklePath,
                          merkle_root: str, timeout: Optional[float] = None) -> SpendProof:
        """Produce a spend proof."""

    @abstractmethod
    async def verify_spend(self, proof: SpendProof, timeout: Optional[float] = None) -> bool:
        """Check a spend proof produced by this backend family."""


class MockProofBackend(ProofBackend):
    """
    Placeholder prover for development and pipeline tests.

    Receipts are random bytes and the verifier accepts every mock proof.
    """

    name = MOCK

    async def prove_spend(self, wallet_address: str, amount: int, merkle_proof: MerklePath,
                          merkle_root: str, timeout: Optional[float] = None) -> SpendProof:
        _check_inputs(wallet_address, amount, merkle_root)

        nullifier = sha256(hex_to_bytes(wallet_address) + amount.to_bytes(32, byteorder='big'))
        return SpendProof(
            receipt=os.urandom(MOCK_RECEIPT_SIZE),
            merkle_root=hex_to_bytes(merkle_root),
            nullifier=nullifier,
            amount=amount,
            backend=MOCK,
        )

    async def verify_spend(self, proof: SpendProof, timeout: Optional[float] = None) -> bool:
        return proof.backend == MOCK


class ExternalProofBackend(ProofBackend):
    """Delegates proving and verification to an external prover process."""

    name = EXTERNAL

    def __init__(self, command: Sequence[str], timeout: float = 120.0):
        """
        Args:
            command: Executable and leading arguments; ``prove``/``verify`` is appended
            timeout: Default time budget per call, in seconds
        """
        if not command:
            raise ValueError("Prover command must not be empty")
        self.command = list(command)
        self.timeout = timeout

    @classmethod
    def from_command_line(cls, command_line: str, timeout: float = 120.0) -> "ExternalProofBackend":
        return cls(shlex.split(command_line), timeout=timeout)

    def available(self) -> bool:
        """Check that the prover executable exists."""
        executable = self.command[0]
        if os.path.isabs(executable):
            return os.path.isfile(executable) and os.access(executable, os.X_OK)
        return shutil.which(executable) is not None

    @staticmethod
    def encode_amount(amount: int) -> str:
        """
        Encode an amount for the prover.

        Raises:
            AmountOverflowError: If the prover cannot represent it exactly
        """
        if amount > MAX_PROVER_AMOUNT:
            raise AmountOverflowError(f"Amount {amount} exceeds prover limit {MAX_PROVER_AMOUNT}")
        return str(amount)

    async def prove_spend(self, wallet_address: str, amount: int, merkle_proof: MerklePath,
                          merkle_root: str, timeout: Optional[float] = None) -> SpendProof:
        _check_inputs(wallet_address, amount, merkle_root)

        request = ProveRequest(
            wallet_address=hex_to_bytes(wallet_address).hex(),
            amount=self.encode_amount(amount),
            merkle_proof=merkle_proof.to_request(),
            merkle_root=hex_to_bytes(merkle_root).hex(),
        )

        returncode, stdout, stderr = await self._run(
            "prove", request.model_dump_json().encode("utf-8"), timeout
        )
        if returncode != 0:
            logger.error("Prover exited with status %d: %s", returncode, _tail(stderr))
            raise ProofGenerationError(f"Prover failed with exit status {returncode}")

        try:
            response = ProveResponse.model_validate_json(stdout)
        except ValidationError as e:
            logger.error("Prover returned malformed output: %s", _tail(stdout))
            raise ProofGenerationError(f"Malformed prover output: {e.error_count()} error(s)") from e

        returned_amount = int(response.amount)
        if returned_amount != amount:
            raise AmountOverflowError(
                f"Prover returned amount {returned_amount}, expected {amount}"
            )

        return SpendProof(
            receipt=hex_to_bytes(response.receipt),
            merkle_root=hex_to_bytes(response.merkle_root),
            nullifier=hex_to_bytes(response.nullifier),
            amount=returned_amount,
            backend=EXTERNAL,
        )

    async def verify_spend(self, proof: SpendProof, timeout: Optional[float] = None) -> bool:
        if proof.backend != EXTERNAL:
            return False

        try:
            request = VerifyRequest(
                receipt=proof.receipt.hex(),
                merkle_root=proof.merkle_root.hex(),
                nullifier=proof.nullifier.hex(),
                amount=self.encode_amount(proof.amount),
            )
            returncode, _, stderr = await self._run(
                "verify", request.model_dump_json().encode("utf-8"), timeout
            )
        except (ProofGenerationError, AmountOverflowError) as e:
            logger.error("Proof verification could not run: %s", e)
            return False

        if returncode != 0:
            logger.info("Prover rejected proof (exit status %d): %s", returncode, _tail(stderr))
        return returncode == 0

    async def _run(self, subcommand: str, payload: bytes,
                   timeout: Optional[float]) -> tuple:
        """Run one request/response round trip with the prover."""
        budget = self.timeout if timeout is None else timeout
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command, subcommand,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("Cannot start prover %s: %s", self.command[0], e)
            raise ProofGenerationError(f"Cannot start prover: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=budget)
        except asyncio.TimeoutError:
            await _terminate(process)
            logger.error("Prover %s timed out after %.1fs", subcommand, budget)
            raise ProofGenerationTimeout(f"Prover {subcommand} exceeded {budget}s")
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        return process.returncode, stdout, stderr


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Kill the prover's whole process group and reap it."""
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, AttributeError):
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


def _tail(data: bytes, limit: int = 500) -> str:
    return data[-limit:].decode("utf-8", errors="replace").strip()


class ProofBroker:
    """
    Routes proof requests to the backend selected at startup.

    Attributes:
        backend: The active backend
        fell_back: True when the external prover was requested but the mock is in use
    """

    def __init__(self, backend: str = MOCK, prover_command: Optional[Sequence[str]] = None,
                 timeout: float = 120.0, allow_mock_fallback: bool = True,
                 production: bool = False):
        """
        Select a backend.

        Raises:
            ProofBackendUnavailableError: If the requested backend cannot be used
                and falling back is not permitted
        """
        self.fell_back = False
        self._external: Optional[ExternalProofBackend] = None

        if backend == EXTERNAL:
            external = ExternalProofBackend(prover_command, timeout) if prover_command else None
            if external is not None and external.available():
                self._external = external
                self.backend: ProofBackend = external
                logger.info("Using external prover %s", external.command[0])
            elif allow_mock_fallback and not production:
                self.backend = MockProofBackend()
                self.fell_back = True
                logger.warning(
                    "External prover unavailable (%s); falling back to MOCK proofs, "
                    "which carry no cryptographic assurance",
                    prover_command[0] if prover_command else "no command configured",
                )
            else:
                raise ProofBackendUnavailableError("External prover is not available")
        elif backend == MOCK:
            if production:
                raise ProofBackendUnavailableError("Mock proofs are not permitted in production")
            self.backend = MockProofBackend()
            logger.info("Using mock proof backend")
        else:
            raise ValueError(f"Unknown proof backend: {backend!r}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProofBroker":
        command = shlex.split(settings.prover_command) if settings.prover_command else None
        return cls(
            backend=settings.proof_backend,
            prover_command=command,
            timeout=settings.prover_timeout_seconds,
            allow_mock_fallback=settings.allow_mock_fallback,
            production=settings.is_production,
        )

    @property
    def is_mock(self) -> bool:
        return self.backend.is_mock

    @property
    def backend_name(self) -> str:
        return self.backend.name

    async def prove_spend(self, wallet_address: str, amount: int, merkle_proof: MerklePath,
                          merkle_root: str, timeout: Optional[float] = None) -> SpendProof:
        """
        Produce a spend proof with the active backend.

        Raises:
            InvalidInputError: If inputs are malformed
            AmountOverflowError: If the amount cannot cross the prover boundary
            ProofGenerationError: If the external prover fails
            ProofGenerationTimeout: If the external prover times out
        """
        return await self.backend.prove_spend(
            wallet_address, amount, merkle_proof, merkle_root, timeout=timeout
        )

    async def verify_spend(self, proof: SpendProof, timeout: Optional[float] = None) -> bool:
        """
        Verify a proof with the verifier of the family that produced it.

        Mock proofs verify only when this broker runs the mock backend.
        Never raises.
        """
        if proof.backend == MOCK:
            if not self.backend.is_mock:
                logger.warning("Rejected mock proof on a broker running real proofs")
                return False
            return await self.backend.verify_spend(proof)
        if proof.backend == EXTERNAL and self._external is not None:
            return await self._external.verify_spend(proof, timeout=timeout)
        return False
