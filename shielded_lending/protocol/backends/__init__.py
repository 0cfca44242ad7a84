"""Proof backends."""

from .disabled import DisabledProofBackend
from .interfaces import ProofBackend
from .subprocess_backend import SubprocessProofBackend

__all__ = ["ProofBackend", "DisabledProofBackend", "SubprocessProofBackend"]
