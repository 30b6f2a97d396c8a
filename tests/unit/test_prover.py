"""Tests for proof backends and the proof broker."""

import asyncio
import os
import shlex
import sys
import time

import pytest

from spendnote.config import Settings
from spendnote.core.prover import (
    EXTERNAL,
    MAX_PROVER_AMOUNT,
    MOCK,
    ExternalProofBackend,
    MerklePath,
    MockProofBackend,
    ProofBroker,
    SpendProof,
)
from spendnote.exceptions import (
    AmountOverflowError,
    InvalidInputError,
    ProofBackendUnavailableError,
    ProofGenerationError,
    ProofGenerationTimeout,
)

WALLET = "0x" + "ab" * 20
ROOT = "0x" + "12" * 32
PATH = MerklePath(["0x" + "34" * 32], [True])


class TestMerklePath:
    """Tests for the prover's path format."""

    def test_default_indices(self):
        path = MerklePath(["0x" + "00" * 32] * 3)
        assert path.indices == [False, False, False]

    def test_length_mismatch(self):
        with pytest.raises(InvalidInputError):
            MerklePath(["0x" + "00" * 32], [True, False])

    def test_request_strips_prefix(self):
        request = PATH.to_request()
        assert request.path == ["34" * 32]
        assert request.indices == [True]


class TestMockBackend:
    """Tests for the mock backend."""

    def test_prove_and_verify(self):
        backend = MockProofBackend()
        proof = asyncio.run(backend.prove_spend(WALLET, 1000, PATH, ROOT))
        assert proof.is_mock
        assert len(proof.receipt) == 128
        assert proof.amount == 1000
        assert proof.merkle_root == bytes.fromhex("12" * 32)
        assert asyncio.run(backend.verify_spend(proof))

    def test_receipts_are_random(self):
        backend = MockProofBackend()
        first = asyncio.run(backend.prove_spend(WALLET, 1, PATH, ROOT))
        second = asyncio.run(backend.prove_spend(WALLET, 1, PATH, ROOT))
        assert first.receipt != second.receipt

    @pytest.mark.parametrize("wallet,amount,root", [
        ("0x1234", 1, ROOT),
        (WALLET, -1, ROOT),
        (WALLET, 1, "0x1234"),
    ])
    def test_invalid_inputs(self, wallet, amount, root):
        with pytest.raises(InvalidInputError):
            asyncio.run(MockProofBackend().prove_spend(wallet, amount, PATH, root))

    def test_to_dict(self):
        proof = asyncio.run(MockProofBackend().prove_spend(WALLET, 7, PATH, ROOT))
        data = proof.to_dict()
        assert data["backend"] == MOCK
        assert data["amount"] == "7"
        assert data["merkle_root"] == ROOT


class TestExternalBackend:
    """Tests for the subprocess prover."""

    def test_success(self, echo_prover):
        backend = ExternalProofBackend(echo_prover, timeout=30)
        assert backend.available()
        proof = asyncio.run(backend.prove_spend(WALLET, 10**18, PATH, ROOT))
        assert proof.backend == EXTERNAL
        assert not proof.is_mock
        assert proof.receipt == bytes.fromhex("ab" * 64)
        assert proof.amount == 10**18
        assert proof.merkle_root == bytes.fromhex("12" * 32)

    def test_verify_roundtrip(self, echo_prover):
        backend = ExternalProofBackend(echo_prover, timeout=30)
        proof = asyncio.run(backend.prove_spend(WALLET, 5, PATH, ROOT))
        assert asyncio.run(backend.verify_spend(proof)) is True

        forged = SpendProof(b"\x00" * 64, proof.merkle_root, proof.nullifier, 5, EXTERNAL)
        assert asyncio.run(backend.verify_spend(forged)) is False

    def test_rejects_mock_proof(self, echo_prover):
        backend = ExternalProofBackend(echo_prover, timeout=30)
        proof = asyncio.run(MockProofBackend().prove_spend(WALLET, 5, PATH, ROOT))
        assert asyncio.run(backend.verify_spend(proof)) is False

    def test_nonzero_exit(self, make_prover):
        command = make_prover("""
            import sys
            sys.stderr.write("guest panicked")
            sys.exit(3)
        """)
        backend = ExternalProofBackend(command, timeout=30)
        with pytest.raises(ProofGenerationError) as exc_info:
            asyncio.run(backend.prove_spend(WALLET, 5, PATH, ROOT))
        assert "3" in str(exc_info.value)

    @pytest.mark.parametrize("output", [
        "not json",
        '{"receipt": "ab"}',
        '{"receipt": "zz", "merkle_root": "00", "nullifier": "00", "amount": "5"}',
        '{"receipt": "", "merkle_root": "00", "nullifier": "00", "amount": "5"}',
        '{"receipt": "ab", "merkle_root": "0x", "nullifier": "0x", "amount": "5"}',
        '{"receipt": "ab", "merkle_root": "0x' + "11" * 31 + '", "nullifier": "' + "22" * 32 + '", "amount": "5"}',
        '{"receipt": "a b", "merkle_root": "' + "11" * 32 + '", "nullifier": "' + "22" * 32 + '", "amount": "5"}',
    ])
    def test_malformed_output(self, make_prover, output):
        command = make_prover(f"""
            import sys
            sys.stdin.read()
            sys.stdout.write({output!r})
        """)
        backend = ExternalProofBackend(command, timeout=30)
        with pytest.raises(ProofGenerationError):
            asyncio.run(backend.prove_spend(WALLET, 5, PATH, ROOT))

    def test_timeout_kills_prover(self, tmp_path, make_prover):
        pid_file = tmp_path / "prover.pid"
        command = make_prover(f"""
            import os
            import time
            with open({str(pid_file)!r}, "w") as f:
                f.write(str(os.getpid()))
            time.sleep(60)
        """)
        backend = ExternalProofBackend(command, timeout=30)

        started = time.monotonic()
        with pytest.raises(ProofGenerationTimeout):
            asyncio.run(backend.prove_spend(WALLET, 5, PATH, ROOT, timeout=3.0))
        assert time.monotonic() - started < 30

        pid = int(pid_file.read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    def test_cancellation_kills_prover(self, tmp_path, make_prover):
        pid_file = tmp_path / "prover.pid"
        command = make_prover(f"""
            import os
            import time
            with open({str(pid_file)!r}, "w") as f:
                f.write(str(os.getpid()))
            time.sleep(60)
        """)
        backend = ExternalProofBackend(command, timeout=30)

        async def scenario():
            task = asyncio.create_task(backend.prove_spend(WALLET, 5, PATH, ROOT))
            for _ in range(100):
                if pid_file.exists() and pid_file.read_text():
                    break
                await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        pid = int(pid_file.read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    def test_amount_over_prover_limit(self, echo_prover):
        backend = ExternalProofBackend(echo_prover, timeout=30)
        with pytest.raises(AmountOverflowError):
            asyncio.run(backend.prove_spend(WALLET, MAX_PROVER_AMOUNT + 1, PATH, ROOT))
        proof = asyncio.run(backend.prove_spend(WALLET, MAX_PROVER_AMOUNT, PATH, ROOT))
        assert proof.amount == MAX_PROVER_AMOUNT

    def test_truncated_amount_detected(self, make_prover):
        command = make_prover("""
            import json
            import sys
            request = json.load(sys.stdin)
            print(json.dumps({
                "receipt": "ab" * 8,
                "merkle_root": request["merkle_root"],
                "nullifier": "cd" * 32,
                "amount": str(int(request["amount"]) % 1000),
            }))
        """)
        backend = ExternalProofBackend(command, timeout=30)
        with pytest.raises(AmountOverflowError):
            asyncio.run(backend.prove_spend(WALLET, 123_456, PATH, ROOT))

    def test_missing_executable(self, tmp_path):
        backend = ExternalProofBackend([str(tmp_path / "missing-prover")])
        assert backend.available() is False
        with pytest.raises(ProofGenerationError):
            asyncio.run(backend.prove_spend(WALLET, 5, PATH, ROOT))

    def test_from_command_line(self):
        backend = ExternalProofBackend.from_command_line(f"{sys.executable} -u prover.py", 5)
        assert backend.command == [sys.executable, "-u", "prover.py"]
        assert backend.timeout == 5


class TestProofBroker:
    """Tests for backend selection."""

    def test_default_is_mock(self):
        broker = ProofBroker()
        assert broker.is_mock
        assert broker.backend_name == MOCK
        assert not broker.fell_back

    def test_external_selected(self, echo_prover):
        broker = ProofBroker(backend=EXTERNAL, prover_command=echo_prover)
        assert not broker.is_mock
        proof = asyncio.run(broker.prove_spend(WALLET, 5, PATH, ROOT))
        assert proof.backend == EXTERNAL
        assert asyncio.run(broker.verify_spend(proof))

    def test_fallback_warns(self, tmp_path, caplog):
        with caplog.at_level("WARNING", logger="spendnote"):
            broker = ProofBroker(backend=EXTERNAL, prover_command=[str(tmp_path / "missing")])
        assert broker.is_mock
        assert broker.fell_back
        assert "MOCK" in caplog.text

    def test_no_fallback_when_disabled(self, tmp_path):
        with pytest.raises(ProofBackendUnavailableError):
            ProofBroker(backend=EXTERNAL, prover_command=[str(tmp_path / "missing")],
                        allow_mock_fallback=False)

    def test_production_never_mock(self, tmp_path):
        with pytest.raises(ProofBackendUnavailableError):
            ProofBroker(backend=MOCK, production=True)
        with pytest.raises(ProofBackendUnavailableError):
            ProofBroker(backend=EXTERNAL, prover_command=[str(tmp_path / "missing")],
                        allow_mock_fallback=True, production=True)

    def test_production_with_external(self, echo_prover):
        broker = ProofBroker(backend=EXTERNAL, prover_command=echo_prover, production=True)
        assert broker.backend_name == EXTERNAL

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            ProofBroker(backend="quantum")

    def test_real_broker_rejects_mock_proof(self, echo_prover):
        broker = ProofBroker(backend=EXTERNAL, prover_command=echo_prover)
        mock_proof = asyncio.run(MockProofBackend().prove_spend(WALLET, 5, PATH, ROOT))
        assert asyncio.run(broker.verify_spend(mock_proof)) is False

    def test_from_settings(self, echo_prover):
        settings = Settings(
            proof_backend="external",
            prover_command=shlex.join(echo_prover),
            prover_timeout_seconds=12,
            _env_file=None,
        )
        broker = ProofBroker.from_settings(settings)
        assert broker.backend_name == EXTERNAL
        assert broker.backend.timeout == 12
