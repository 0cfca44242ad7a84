"""Action-scoped nullifiers: nullifier = Hash(commitment, action_tag)."""

from __future__ import annotations

from typing import Optional

from .commitments import validate_amount
from .exceptions import UserInputError
from .fields import FieldHasher, domain_hash, hash_elements, parse_felt, short_string
from .types import ActionKind

BORROW_TAG = short_string(ActionKind.BORROW.value)
EXIT_TAG = short_string(ActionKind.EXIT.value)


def action_tag(
    kind: ActionKind, amount: Optional[int] = None, hasher: FieldHasher = hash_elements
) -> int:
    """
    Tag distinguishing action kinds; a borrow tag also binds its amount.

    Distinct borrow sizes therefore produce distinct nullifiers, so the
    nullifier alone does not cap how many borrows a commitment can back.
    """
    if kind is ActionKind.EXIT:
        if amount not in (None, 0):
            raise UserInputError("exit nullifier takes no amount")
        return EXIT_TAG
    if amount is None:
        raise UserInputError("borrow nullifier requires the borrow amount")
    return domain_hash("nullifier", BORROW_TAG, validate_amount(amount, "borrow_amount"), hasher=hasher)


def derive(
    commitment: int,
    kind: ActionKind,
    amount: Optional[int] = None,
    hasher: FieldHasher = hash_elements,
) -> int:
    commitment = parse_felt(commitment, "commitment")
    return domain_hash(
        "nullifier", commitment, action_tag(kind, amount, hasher), hasher=hasher
    )
