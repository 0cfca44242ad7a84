"""
Proof backend interface.

A backend turns the structured input record into an opaque proof or fails.
Failure is always an exception; a backend never returns a stand-in proof.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict


class ProofBackend(ABC):
    """Abstract prover used by the proof orchestrator."""

    name: str = "abstract"

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the backend can be invoked at all (binary present, etc.)."""

    @abstractmethod
    async def prove(self, inputs: Dict[str, Any]) -> bytes:
        """
        Generate a proof.

        Args:
            inputs: Backend input object (ActionProofInput.to_backend_dict())

        Returns:
            Raw proof bytes

        Raises:
            ProofBackendUnavailable: If the backend fails or is not installed
        """

    def get_backend_info(self) -> Dict[str, Any]:
        return {"name": self.name, "available": self.is_available()}
