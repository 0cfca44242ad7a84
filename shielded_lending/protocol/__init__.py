"""Public API for the shielded lending protocol engine."""
from __future__ import annotations

from importlib import import_module

from .commitments import compute_commitment, create_record, generate_salt
from .context import SessionContext, Signer
from .exceptions import LendingProtocolError
from .factory import get_proof_backend
from .health import evaluate, evaluate_units
from .merkle import MerkleTracker, compute_root, verify_path
from .nullifier import derive as derive_nullifier
from .orchestrator import OraclePrices, ProofOrchestrator
from .store import CommitmentStore, FernetCipher, FileTransport, MemoryTransport
from .types import (
    ActionKind,
    CommitmentRecord,
    ProofArtifact,
    PublicInputs,
    TxOutcome,
    TxReceipt,
)

__all__ = [
    "compute_commitment",
    "create_record",
    "generate_salt",
    "SessionContext",
    "Signer",
    "LendingProtocolError",
    "get_proof_backend",
    "evaluate",
    "evaluate_units",
    "MerkleTracker",
    "compute_root",
    "verify_path",
    "derive_nullifier",
    "OraclePrices",
    "ProofOrchestrator",
    "CommitmentStore",
    "FernetCipher",
    "FileTransport",
    "MemoryTransport",
    "ActionKind",
    "CommitmentRecord",
    "ProofArtifact",
    "PublicInputs",
    "TxOutcome",
    "TxReceipt",
    "ActionFlow",
    "ActionState",
    "Settings",
    "load_settings",
]

# flow depends on the ledger package, which imports protocol submodules
_LAZY_EXPORTS = {
    "ActionFlow": "flow",
    "ActionState": "flow",
    "Settings": "settings",
    "load_settings": "settings",
}


def __getattr__(name: str):
    if name in _LAZY_EXPORTS:
        module = import_module(f"{__name__}.{_LAZY_EXPORTS[name]}")
        value = getattr(module, name)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
