"""Backend used when no prover is installed."""

from __future__ import annotations

from typing import Any, Dict

from ..exceptions import ProofBackendUnavailable
from .interfaces import ProofBackend


class DisabledProofBackend(ProofBackend):
    name = "disabled"

    def is_available(self) -> bool:
        return False

    async def prove(self, inputs: Dict[str, Any]) -> bytes:
        raise ProofBackendUnavailable("no proof backend is installed")
