"""Unit tests for the subprocess proof backend."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from shielded_lending.protocol.backends.subprocess_backend import SubprocessProofBackend
from shielded_lending.protocol.config import MAX_PROOF_BYTES
from shielded_lending.protocol.exceptions import ProofBackendUnavailable

GOOD_PROVER = """
import json, sys
inputs = json.load(open(sys.argv[1]))
with open(sys.argv[2], "wb") as fh:
    fh.write(("proof:" + inputs["nullifier"]).encode())
"""

FAILING_PROVER = """
import sys
sys.stderr.write("constraint 17 unsatisfied")
sys.exit(3)
"""

SILENT_PROVER = "pass\n"

OVERSIZED_PROVER = """
import sys
with open(sys.argv[2], "wb") as fh:
    fh.write(b"x" * {size})
""".format(size=MAX_PROOF_BYTES + 1)


def _backend(tmp_path: Path, source: str) -> SubprocessProofBackend:
    script = tmp_path / "prover.py"
    script.write_text(source, encoding="utf-8")
    return SubprocessProofBackend([sys.executable, str(script), "{input}", "{output}"])


@pytest.mark.trio
async def test_prover_output_is_returned(tmp_path: Path) -> None:
    backend = _backend(tmp_path, GOOD_PROVER)
    assert backend.is_available()
    proof = await backend.prove({"nullifier": "99"})
    assert proof == b"proof:99"


@pytest.mark.trio
async def test_prover_failure_surfaces_stderr(tmp_path: Path) -> None:
    backend = _backend(tmp_path, FAILING_PROVER)
    with pytest.raises(ProofBackendUnavailable, match="constraint 17"):
        await backend.prove({"nullifier": "1"})


@pytest.mark.trio
async def test_missing_proof_file(tmp_path: Path) -> None:
    backend = _backend(tmp_path, SILENT_PROVER)
    with pytest.raises(ProofBackendUnavailable, match="did not write"):
        await backend.prove({})


@pytest.mark.trio
async def test_oversized_proof_rejected(tmp_path: Path) -> None:
    backend = _backend(tmp_path, OVERSIZED_PROVER)
    with pytest.raises(ProofBackendUnavailable, match="too large"):
        await backend.prove({})


@pytest.mark.trio
async def test_missing_binary_is_unavailable() -> None:
    backend = SubprocessProofBackend("no-such-lending-prover-binary {input} {output}")
    assert backend.is_available() is False
    with pytest.raises(ProofBackendUnavailable):
        await backend.prove({})


def test_template_requires_placeholders() -> None:
    with pytest.raises(ValueError):
        SubprocessProofBackend("lending-prover --inputs in.json")
    with pytest.raises(ValueError):
        SubprocessProofBackend([])


def test_command_rendering(tmp_path: Path) -> None:
    backend = SubprocessProofBackend(["prover", "{input}", "{output}"])
    rendered = backend._render(tmp_path / "a.json", tmp_path / "b.bin")
    assert rendered == ["prover", str(tmp_path / "a.json"), str(tmp_path / "b.bin")]
