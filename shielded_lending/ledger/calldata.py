"""
Calldata encoding for the lending vault entry points.

u256 values travel as (low, high) 128-bit halves, field elements as single
values, the proof as a Span of byte felts (length first). Everything is
rendered as decimal strings.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Tuple

from ..protocol.config import U256_MAX
from ..protocol.exceptions import ProofBindingError, UserInputError
from ..protocol.types import ActionKind, ProofArtifact, PublicInputs

_U128 = 1 << 128

ENTRYPOINTS: Dict[ActionKind, str] = {
    ActionKind.BORROW: "borrow",
    ActionKind.EXIT: "emergency_exit",
}


def split_u256(value: int) -> Tuple[int, int]:
    """
    Split a u256 into (low, high) 128-bit halves.

    Example:
        >>> split_u256(2**128 + 5)
        (5, 1)
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise UserInputError("u256 value must be an integer")
    if not 0 <= value <= U256_MAX:
        raise UserInputError(f"value out of u256 range: {value}")
    return value % _U128, value // _U128


def join_u256(low: int, high: int) -> int:
    return low + (high << 128)


def _u256(value: int) -> List[str]:
    low, high = split_u256(value)
    return [str(low), str(high)]


def _felt(value: int) -> str:
    return str(value)


def _address(value: str) -> str:
    return str(int(value, 16))


def encode_proof(proof: bytes) -> List[str]:
    if not proof:
        raise ProofBindingError("cannot encode an empty proof")
    return [str(len(proof))] + [str(byte) for byte in proof]


def encode_borrow(proof: bytes, inputs: PublicInputs) -> List[str]:
    """borrow(proof, merkle_root, borrow_amount, btc_price, usdc_price, min_health_factor, nullifier, owner)"""
    return (
        encode_proof(proof)
        + [_felt(inputs.merkle_root)]
        + _u256(inputs.borrow_amount)
        + _u256(inputs.btc_price)
        + _u256(inputs.usdc_price)
        + _u256(inputs.min_health_factor)
        + [_felt(inputs.nullifier), _address(inputs.owner)]
    )


def encode_exit(proof: bytes, inputs: PublicInputs) -> List[str]:
    """emergency_exit(proof, commitment, btc_amount, merkle_root, health_factor, nullifier)"""
    if inputs.commitment is None or inputs.btc_amount is None:
        raise ProofBindingError("exit public inputs must publish commitment and amount")
    return (
        encode_proof(proof)
        + [_felt(inputs.commitment)]
        + _u256(inputs.btc_amount)
        + [_felt(inputs.merkle_root)]
        + _u256(inputs.health_factor)
        + [_felt(inputs.nullifier)]
    )


_ENCODERS: Dict[ActionKind, Callable[[bytes, PublicInputs], List[str]]] = {
    ActionKind.BORROW: encode_borrow,
    ActionKind.EXIT: encode_exit,
}


def encode_action(artifact: ProofArtifact) -> Tuple[str, List[str]]:
    """Entry point name and calldata for a bound artifact."""
    kind = artifact.public_inputs.kind
    return ENTRYPOINTS[kind], _ENCODERS[kind](artifact.proof, artifact.public_inputs)
