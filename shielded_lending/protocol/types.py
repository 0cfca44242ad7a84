"""
⚠️ DRAFT — requires protocol review before production use

Common types for the shielded lending engine.

This module provides:
1. CommitmentRecord - the one persisted position of an identity
2. ActionKind - borrow / exit
3. ActionProofInput - the exact input record a proof backend consumes
4. PublicInputs / ProofArtifact - a proof bound to the values it proves
5. TxReceipt / AggregateHealth / DepositResult - ledger results

Serialization:
- CommitmentRecord: JSON-compatible dict (persisted format, decimal strings)
- ProofArtifact: CBOR with version field and binding digest
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import cbor2

from .config import ARTIFACT_VERSION, MAX_PROOF_BYTES, MERKLE_DEPTH
from .exceptions import ProofBindingError, StoreError, UserInputError
from .fields import normalize_address, parse_felt

# ============================================================================
# ACTION KIND
# ============================================================================


class ActionKind(Enum):
    """
    Kinds of proof-gated ledger actions.

    - BORROW: draw debt against the pooled collateral
    - EXIT: remove the position entirely (emergency exit)
    """

    BORROW = "borrow"
    EXIT = "exit"


# ============================================================================
# COMMITMENT RECORD
# ============================================================================


@dataclass(frozen=True)
class CommitmentRecord:
    """
    One deposit position, persisted per identity.

    The Merkle path and indices are a cached witness for the tree at deposit
    time; they must be revalidated against the live root before use.

    Attributes:
        commitment: Hash(owner, amount, salt)
        owner: Account address that made the deposit (0x-hex)
        amount: Deposited collateral in smallest units
        salt: Random field element, never reused
        merkle_root: Pool root observed at deposit time
        merkle_path: Sibling hashes from leaf to root
        merkle_indices: Direction bits matching merkle_path (1 = node is right child)
        created_at: Unix timestamp of the deposit
    """

    commitment: int
    owner: str
    amount: int
    salt: int
    merkle_root: int
    merkle_path: Tuple[int, ...]
    merkle_indices: Tuple[int, ...]
    created_at: int = field(default_factory=lambda: int(time.time()))

    def __post_init__(self) -> None:
        if len(self.merkle_path) != len(self.merkle_indices):
            raise UserInputError("merkle_path and merkle_indices length mismatch")
        if any(bit not in (0, 1) for bit in self.merkle_indices):
            raise UserInputError("merkle_indices must be 0 or 1")
        if self.amount <= 0:
            raise UserInputError("amount must be positive")

    @property
    def depth(self) -> int:
        return len(self.merkle_path)

    def to_dict(self) -> Dict[str, Any]:
        """Persisted format; big integers rendered as decimal strings."""
        return {
            "commitment": str(self.commitment),
            "owner": self.owner,
            "btcAmount": str(self.amount),
            "salt": str(self.salt),
            "merkleRoot": str(self.merkle_root),
            "merklePath": [str(node) for node in self.merkle_path],
            "merkleIndices": list(self.merkle_indices),
            "timestamp": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommitmentRecord":
        """
        Rebuild a record from its persisted format.

        Raises:
            StoreError: If required fields are missing or malformed
        """
        try:
            amount = int(str(data["btcAmount"]))
            return cls(
                commitment=parse_felt(data["commitment"], "commitment"),
                owner=normalize_address(data["owner"]),
                amount=amount,
                salt=parse_felt(data["salt"], "salt"),
                merkle_root=parse_felt(data["merkleRoot"], "merkleRoot"),
                merkle_path=tuple(
                    parse_felt(node, "merklePath") for node in data["merklePath"]
                ),
                merkle_indices=tuple(int(bit) for bit in data["merkleIndices"]),
                created_at=int(data["timestamp"]),
            )
        except (KeyError, TypeError, ValueError, UserInputError) as exc:
            raise StoreError(f"malformed commitment record: {exc}") from exc


# ============================================================================
# PROOF INPUT
# ============================================================================


@dataclass(frozen=True)
class ActionProofInput:
    """
    Input record for the proof backend, built fresh per action.

    Never persisted. Combines the stored record with action-scoped public
    parameters; merkle_root is always the live root.
    """

    kind: ActionKind
    commitment: int
    merkle_root: int
    merkle_path: Tuple[int, ...]
    merkle_indices: Tuple[int, ...]
    borrow_amount: int
    btc_price: int
    usdc_price: int
    min_health_factor: int
    owner: str
    btc_amount: int
    salt: int
    nullifier: int

    def __post_init__(self) -> None:
        if len(self.merkle_path) != MERKLE_DEPTH:
            raise UserInputError(
                f"merkle_path must have depth {MERKLE_DEPTH}, got {len(self.merkle_path)}"
            )
        if len(self.merkle_indices) != len(self.merkle_path):
            raise UserInputError("merkle_path and merkle_indices length mismatch")

    def to_backend_dict(self) -> Dict[str, Any]:
        """Render the proof backend input object (decimal strings)."""
        return {
            "merkle_root": str(self.merkle_root),
            "merkle_path": [str(node) for node in self.merkle_path],
            "merkle_indices": list(self.merkle_indices),
            "borrow_amount": str(self.borrow_amount),
            "btc_price": str(self.btc_price),
            "usdc_price": str(self.usdc_price),
            "min_health_factor": str(self.min_health_factor),
            "owner": str(int(self.owner, 16)),
            "btc_amount": str(self.btc_amount),
            "salt": str(self.salt),
            "nullifier": str(self.nullifier),
        }


# ============================================================================
# PUBLIC INPUTS AND ARTIFACT
# ============================================================================


@dataclass(frozen=True)
class PublicInputs:
    """
    Values the ledger sees for one action.

    commitment and btc_amount are only published by an exit; a borrow keeps
    them private.
    """

    kind: ActionKind
    merkle_root: int
    nullifier: int
    owner: str
    borrow_amount: int
    btc_price: int
    usdc_price: int
    min_health_factor: int
    health_factor: int
    commitment: Optional[int] = None
    btc_amount: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PublicInputs":
        values = dict(data)
        values["kind"] = ActionKind(values["kind"])
        return cls(**values)


def _binding_digest(proof: bytes, public_inputs: PublicInputs) -> bytes:
    payload = cbor2.dumps(
        {"proof": proof, "public_inputs": public_inputs.to_dict()}, canonical=True
    )
    return hashlib.sha256(payload).digest()


@dataclass(frozen=True)
class ProofArtifact:
    """
    Opaque proof bound to the public inputs it was generated for.

    Example:
        >>> artifact = ProofArtifact.bind(proof_bytes, public_inputs)
        >>> restored = ProofArtifact.from_bytes(artifact.to_bytes())
    """

    proof: bytes
    public_inputs: PublicInputs
    digest: bytes

    @classmethod
    def bind(cls, proof: bytes, public_inputs: PublicInputs) -> "ProofArtifact":
        if not proof:
            raise ProofBindingError("refusing to bind an empty proof")
        if len(proof) > MAX_PROOF_BYTES:
            raise ProofBindingError("proof too large")
        return cls(
            proof=bytes(proof),
            public_inputs=public_inputs,
            digest=_binding_digest(bytes(proof), public_inputs),
        )

    def matches(self, public_inputs: PublicInputs) -> bool:
        return self.digest == _binding_digest(self.proof, public_inputs)

    def to_bytes(self) -> bytes:
        return cbor2.dumps(
            {
                "v": ARTIFACT_VERSION,
                "proof": self.proof,
                "public_inputs": self.public_inputs.to_dict(),
                "digest": self.digest,
            }
        )

    @classmethod
    def from_bytes(cls, blob: bytes) -> "ProofArtifact":
        """
        Deserialize and re-check the binding.

        Raises:
            ProofBindingError: If the blob is malformed or the digest does not match
        """
        try:
            payload = cbor2.loads(blob)
        except Exception as exc:
            raise ProofBindingError(f"artifact is not valid CBOR: {exc}") from exc
        if not isinstance(payload, dict) or payload.get("v") != ARTIFACT_VERSION:
            raise ProofBindingError("unsupported artifact version")
        try:
            public_inputs = PublicInputs.from_dict(payload["public_inputs"])
            artifact = cls(
                proof=bytes(payload["proof"]),
                public_inputs=public_inputs,
                digest=bytes(payload["digest"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProofBindingError(f"malformed artifact: {exc}") from exc
        if not artifact.matches(public_inputs):
            raise ProofBindingError("artifact digest does not match its public inputs")
        return artifact


# ============================================================================
# LEDGER RESULTS
# ============================================================================


class TxOutcome(Enum):
    ACCEPTED = "accepted"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    outcome: TxOutcome
    revert_reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is TxOutcome.ACCEPTED


@dataclass(frozen=True)
class DepositResult:
    receipt: TxReceipt
    commitment: Optional[int] = None


@dataclass(frozen=True)
class AggregateHealth:
    """Pool-wide health; health_factor is scaled by HEALTH_FACTOR_SCALE."""

    collateral_usd: int
    debt_usd: int
    health_factor: int
