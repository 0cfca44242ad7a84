"""
Deposit commitments.

commitment = Hash(owner, amount, salt), domain separated and reduced into
the STARK field. The salt is drawn once per deposit from the OS CSPRNG.
"""

from __future__ import annotations

import secrets
import time
from typing import Optional, Sequence

from .config import MERKLE_DEPTH, STARK_PRIME, U128_MAX
from .exceptions import UserInputError
from .fields import FieldHasher, domain_hash, hash_elements, normalize_address, parse_felt
from .types import CommitmentRecord


def generate_salt() -> int:
    """Fresh random field element, never zero."""
    return secrets.randbelow(STARK_PRIME - 1) + 1


def validate_amount(amount: int, field: str = "amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise UserInputError(f"{field} must be an integer in smallest units")
    if amount <= 0:
        raise UserInputError(f"{field} must be positive")
    if amount > U128_MAX:
        raise UserInputError(f"{field} exceeds u128 range")
    return amount


def compute_commitment(
    owner: str, amount: int, salt: int, hasher: FieldHasher = hash_elements
) -> int:
    """
    Compute the commitment binding owner, amount and salt.

    Args:
        owner: Account address (hex)
        amount: Collateral in smallest units
        salt: Random field element

    Returns:
        Field element commitment
    """
    owner_felt = parse_felt(owner, "owner")
    validate_amount(amount)
    return domain_hash("commitment", owner_felt, amount, parse_felt(salt, "salt"), hasher=hasher)


def create_record(
    owner: str,
    amount: int,
    merkle_root: int,
    merkle_path: Sequence[int],
    merkle_indices: Sequence[int],
    *,
    salt: Optional[int] = None,
    created_at: Optional[int] = None,
    hasher: FieldHasher = hash_elements,
) -> CommitmentRecord:
    """
    Build a new CommitmentRecord for a confirmed deposit.

    Raises:
        UserInputError: If amount, salt or witness are invalid
    """
    if salt is None:
        salt = generate_salt()
    if salt == 0:
        raise UserInputError("salt must be non-zero")
    if len(merkle_path) != MERKLE_DEPTH:
        raise UserInputError(
            f"merkle_path must have depth {MERKLE_DEPTH}, got {len(merkle_path)}"
        )
    owner = normalize_address(owner)
    return CommitmentRecord(
        commitment=compute_commitment(owner, amount, salt, hasher=hasher),
        owner=owner,
        amount=amount,
        salt=salt,
        merkle_root=parse_felt(merkle_root, "merkle_root"),
        merkle_path=tuple(parse_felt(node, "merkle_path") for node in merkle_path),
        merkle_indices=tuple(int(bit) for bit in merkle_indices),
        created_at=int(time.time()) if created_at is None else created_at,
    )
