"""
Action submitter.

One atomic ledger call per action, no automatic retries, at most one
submission in flight per submitter instance.
"""

from __future__ import annotations

import logging

from ..protocol.exceptions import (
    ConcurrentSubmissionError,
    LedgerGatewayError,
    LedgerSubmissionError,
    ProofBindingError,
)
from ..protocol.types import ActionKind, ProofArtifact, PublicInputs, TxReceipt
from .calldata import encode_action
from .gateway import LedgerGateway

logger = logging.getLogger(__name__)


class ActionSubmitter:
    def __init__(self, gateway: LedgerGateway) -> None:
        self._gateway = gateway
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def submit(
        self, kind: ActionKind, artifact: ProofArtifact, public_inputs: PublicInputs
    ) -> TxReceipt:
        """
        Encode and send an action; report accepted / reverted / timed out.

        Raises:
            ConcurrentSubmissionError: A submission is already in flight
            ProofBindingError: public_inputs are not the ones the proof was made for
            LedgerSubmissionError: The gateway or wallet failed before a receipt
        """
        if self._in_flight:
            raise ConcurrentSubmissionError("a submission is already in flight")
        if public_inputs.kind is not kind or artifact.public_inputs.kind is not kind:
            raise ProofBindingError(f"artifact is not a {kind.value} proof")
        if not artifact.matches(public_inputs):
            raise ProofBindingError("proof was generated for different public inputs")

        entrypoint, calldata = encode_action(artifact)
        self._in_flight = True
        try:
            receipt = await self._gateway.invoke(entrypoint, calldata)
        except LedgerGatewayError as exc:
            raise LedgerSubmissionError(f"{entrypoint} failed: {exc}") from exc
        finally:
            self._in_flight = False

        logger.info("%s %s: %s", entrypoint, receipt.tx_hash, receipt.outcome.value)
        return receipt
