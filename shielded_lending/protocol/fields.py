"""
Field element helpers.

Hashes use SHA-256 with domain separation, reduced into the STARK field so
every output is a valid felt. A circuit-native hash can be swapped in by
passing any FieldHasher to the callers that accept one.
"""

from __future__ import annotations

import hashlib
from decimal import Decimal, InvalidOperation
from typing import Callable, Union

from .config import DOMAIN_SEPARATORS, FELT_BYTES, STARK_PRIME
from .exceptions import UserInputError

FieldHasher = Callable[[bytes, tuple], int]
FeltLike = Union[int, str]


def felt_to_bytes(value: int) -> bytes:
    """Encode a field element as 32 big-endian bytes."""
    if not 0 <= value < STARK_PRIME:
        raise UserInputError(f"value out of field range: {value}")
    return value.to_bytes(FELT_BYTES, "big")


def hash_elements(domain: bytes, elements: tuple) -> int:
    """
    Hash field elements with a domain separator.

    Args:
        domain: Domain separator (one of DOMAIN_SEPARATORS)
        elements: Field elements to absorb, in order

    Returns:
        Field element in [0, STARK_PRIME)

    Example:
        >>> commitment = hash_elements(DOMAIN_SEPARATORS["commitment"], (owner, amount, salt))
    """
    hasher = hashlib.sha256(domain)
    hasher.update(len(elements).to_bytes(2, "big"))
    for element in elements:
        hasher.update(felt_to_bytes(element))
    return int.from_bytes(hasher.digest(), "big") % STARK_PRIME


def domain_hash(name: str, *elements: int, hasher: FieldHasher = hash_elements) -> int:
    return hasher(DOMAIN_SEPARATORS[name], tuple(elements))


def parse_felt(value: FeltLike, field: str = "value") -> int:
    """
    Parse a felt from an int, a decimal string or a 0x-prefixed hex string.

    Raises:
        UserInputError: If the value is malformed or outside the field
    """
    if isinstance(value, bool):
        raise UserInputError(f"{field} must be a field element")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError as exc:
            raise UserInputError(f"{field} is not a number: {value!r}") from exc
    else:
        raise UserInputError(f"{field} must be int or str, got {type(value).__name__}")

    if not 0 <= parsed < STARK_PRIME:
        raise UserInputError(f"{field} out of field range")
    return parsed


def short_string(text: str) -> int:
    """Encode an ASCII string of at most 31 characters as a felt."""
    raw = text.encode("ascii")
    if len(raw) > 31:
        raise UserInputError("short string longer than 31 characters")
    return int.from_bytes(raw, "big")


def normalize_address(address: str) -> str:
    """Canonical lower-case 0x-hex form of an account address."""
    return hex(parse_felt(address, "address"))


def parse_units(text: str, decimals: int, field: str = "amount") -> int:
    """
    Convert a human decimal amount to integer base units.

    Example:
        >>> parse_units("1.5", 8)
        150000000
    """
    try:
        value = Decimal(str(text).strip())
    except InvalidOperation as exc:
        raise UserInputError(f"{field} is not a number: {text!r}") from exc
    if not value.is_finite():
        raise UserInputError(f"{field} must be finite")
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise UserInputError(f"{field} has more than {decimals} decimal places")
    return int(scaled)


def format_units(value: int, decimals: int) -> str:
    """Inverse of parse_units, without trailing zeros."""
    text = format(Decimal(value).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
