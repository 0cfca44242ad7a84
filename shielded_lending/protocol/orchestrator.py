"""
Proof input assembly and proof orchestration.

The orchestrator is the only caller of the proof backend. Every failure mode
(backend missing, backend error, timeout, empty output) surfaces as
ProofBackendUnavailable; a successful result is a ProofArtifact bound to the
public inputs it proves, so the submitter cannot pair it with other values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import trio

from .config import BTC_PRICE, HEALTH_FACTOR_SCALE, PROOF_TIMEOUT_SEC, USDC_PRICE
from .exceptions import (
    ProofBackendUnavailable,
    ProofBindingError,
    ProofTimeoutError,
    UserInputError,
)
from .backends.interfaces import ProofBackend
from .health import min_percent_for
from .merkle import MembershipWitness
from .types import ActionKind, ActionProofInput, CommitmentRecord, ProofArtifact, PublicInputs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OraclePrices:
    """Fixed oracle values in smallest units (6 decimals)."""

    btc_price: int = BTC_PRICE
    usdc_price: int = USDC_PRICE

    def __post_init__(self) -> None:
        if self.btc_price <= 0 or self.usdc_price <= 0:
            raise UserInputError("oracle prices must be positive")


def assemble_inputs(
    record: CommitmentRecord,
    witness: MembershipWitness,
    kind: ActionKind,
    owner: str,
    nullifier: int,
    borrow_amount: int = 0,
    prices: OraclePrices = OraclePrices(),
) -> ActionProofInput:
    """
    Build the proof backend input for one action.

    The public root is always the witness root, i.e. the live root.

    Raises:
        UserInputError: If the action parameters are inconsistent
    """
    if owner != record.owner:
        raise UserInputError("action owner does not match commitment owner")
    if kind is ActionKind.EXIT and borrow_amount:
        raise UserInputError("exit carries no borrow amount")
    if kind is ActionKind.BORROW and borrow_amount <= 0:
        raise UserInputError("borrow amount must be positive")

    return ActionProofInput(
        kind=kind,
        commitment=record.commitment,
        merkle_root=witness.root,
        merkle_path=witness.path,
        merkle_indices=witness.indices,
        borrow_amount=borrow_amount,
        btc_price=prices.btc_price,
        usdc_price=prices.usdc_price,
        min_health_factor=min_percent_for(kind),
        owner=owner,
        btc_amount=record.amount,
        salt=record.salt,
        nullifier=nullifier,
    )


def public_inputs_for(proof_input: ActionProofInput) -> PublicInputs:
    """Public half of an input record, as the ledger will see it."""
    is_exit = proof_input.kind is ActionKind.EXIT
    return PublicInputs(
        kind=proof_input.kind,
        merkle_root=proof_input.merkle_root,
        nullifier=proof_input.nullifier,
        owner=proof_input.owner,
        borrow_amount=proof_input.borrow_amount,
        btc_price=proof_input.btc_price,
        usdc_price=proof_input.usdc_price,
        min_health_factor=proof_input.min_health_factor,
        # The proven threshold, never the private ratio itself
        health_factor=proof_input.min_health_factor * HEALTH_FACTOR_SCALE // 100,
        commitment=proof_input.commitment if is_exit else None,
        btc_amount=proof_input.btc_amount if is_exit else None,
    )


class ProofOrchestrator:
    """
    Request proofs from a backend under a time budget.

    Example:
        orchestrator = ProofOrchestrator(get_proof_backend(), timeout=120)
        artifact = await orchestrator.request_proof(proof_input)
    """

    def __init__(self, backend: ProofBackend, timeout: Optional[float] = None) -> None:
        self._backend = backend
        self._timeout = PROOF_TIMEOUT_SEC if timeout is None else timeout

    @property
    def backend(self) -> ProofBackend:
        return self._backend

    async def request_proof(self, proof_input: ActionProofInput) -> ProofArtifact:
        """
        Generate and bind a proof.

        Raises:
            ProofBackendUnavailable: Backend missing or failed
            ProofTimeoutError: Backend exceeded the timeout
        """
        if not self._backend.is_available():
            raise ProofBackendUnavailable(
                f"proof backend {self._backend.name!r} is not available"
            )

        public_inputs = public_inputs_for(proof_input)
        logger.info(
            "requesting %s proof from %s backend",
            proof_input.kind.value,
            self._backend.name,
        )
        try:
            with trio.fail_after(self._timeout):
                proof = await self._backend.prove(proof_input.to_backend_dict())
        except trio.TooSlowError as exc:
            raise ProofTimeoutError(
                f"proof generation exceeded {self._timeout:.0f}s"
            ) from exc
        except ProofBackendUnavailable:
            raise
        except Exception as exc:
            raise ProofBackendUnavailable(
                f"proof backend {self._backend.name!r} failed: {exc}"
            ) from exc

        if not isinstance(proof, (bytes, bytearray)) or not proof:
            raise ProofBackendUnavailable("proof backend returned no proof")
        try:
            return ProofArtifact.bind(bytes(proof), public_inputs)
        except ProofBindingError as exc:
            raise ProofBackendUnavailable(str(exc)) from exc
