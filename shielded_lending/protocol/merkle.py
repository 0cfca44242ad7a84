"""
Merkle membership for pooled commitments.

Fixed-depth tree over field elements with domain separated node hashing.
Empty leaves are zero. Direction bits follow the circuit convention:
index bit 0 means the current node is the left child, 1 the right child.

MerkleTracker holds the witness cached at deposit time and checks it
against the live pool root before any proof request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from .config import MERKLE_DEPTH
from .exceptions import StaleRootError, UserInputError
from .fields import FieldHasher, domain_hash, hash_elements
from .types import CommitmentRecord

logger = logging.getLogger(__name__)

Witness = Tuple[Tuple[int, ...], Tuple[int, ...]]


def hash_node(left: int, right: int, hasher: FieldHasher = hash_elements) -> int:
    """
    Hash two child nodes.

    Note:
        Uses fixed left||right ordering (no sorting).
        Domain separation applied.
    """
    return domain_hash("merkle_node", left, right, hasher=hasher)


def compute_root(
    leaf: int,
    path: Sequence[int],
    indices: Sequence[int],
    hasher: FieldHasher = hash_elements,
) -> int:
    if len(path) != len(indices):
        raise UserInputError("path and indices length mismatch")
    current = leaf
    for sibling, bit in zip(path, indices):
        if bit:
            # Current node is the right child
            current = hash_node(sibling, current, hasher)
        else:
            current = hash_node(current, sibling, hasher)
    return current


def verify_path(
    leaf: int,
    path: Sequence[int],
    indices: Sequence[int],
    root: int,
    hasher: FieldHasher = hash_elements,
) -> bool:
    """
    Verify a Merkle authentication path.

    Returns:
        True if path is valid, False otherwise
    """
    try:
        return compute_root(leaf, path, indices, hasher) == root
    except UserInputError:
        return False


def zero_hashes(depth: int = MERKLE_DEPTH, hasher: FieldHasher = hash_elements) -> List[int]:
    """Root of an empty subtree at every height, zeros[0] being the empty leaf."""
    zeros = [0]
    for _ in range(depth):
        zeros.append(hash_node(zeros[-1], zeros[-1], hasher))
    return zeros


def build_tree(
    leaves: Sequence[int],
    depth: int = MERKLE_DEPTH,
    hasher: FieldHasher = hash_elements,
) -> Tuple[int, Dict[int, Witness]]:
    """
    Build a fixed-depth tree and its authentication paths.

    Args:
        leaves: Commitments in insertion order
        depth: Tree depth; capacity is 2**depth

    Returns:
        (root, witnesses) where witnesses maps leaf index -> (path, indices)

    Example:
        root, witnesses = build_tree([c0, c1, c2])
        path, indices = witnesses[2]
    """
    if len(leaves) > 2**depth:
        raise UserInputError("too many leaves for tree depth")

    zeros = zero_hashes(depth, hasher)
    paths: Dict[int, List[int]] = {i: [] for i in range(len(leaves))}
    bits: Dict[int, List[int]] = {i: [] for i in range(len(leaves))}

    level = list(leaves)
    for height in range(depth):
        if len(level) % 2:
            level.append(zeros[height])
        for leaf_index in paths:
            position = leaf_index >> height
            sibling = position ^ 1
            paths[leaf_index].append(level[sibling])
            bits[leaf_index].append(position & 1)
        level = [
            hash_node(level[i], level[i + 1], hasher) for i in range(0, len(level), 2)
        ]

    root = level[0] if level else zeros[depth]
    witnesses = {i: (tuple(paths[i]), tuple(bits[i])) for i in paths}
    return root, witnesses


def empty_witness(depth: int = MERKLE_DEPTH) -> Witness:
    return tuple([0] * depth), tuple([0] * depth)


# ============================================================================
# MEMBERSHIP TRACKER
# ============================================================================


class PathProvider(Protocol):
    """Indexing service able to hand out a fresh path for a commitment."""

    async def fetch_path(self, commitment: int) -> Tuple[Sequence[int], Sequence[int], int]:
        ...


@dataclass(frozen=True)
class MembershipWitness:
    """Witness ready for proof assembly; root is always the live root."""

    root: int
    path: Tuple[int, ...]
    indices: Tuple[int, ...]
    refreshed: bool = False


class MerkleTracker:
    """
    Transient view of a record's cached witness.

    Never writes back to the store: a path refreshed here lives only for
    the current action.
    """

    def __init__(self, record: CommitmentRecord) -> None:
        self._commitment = record.commitment
        self._snapshot_root = record.merkle_root
        self._path = record.merkle_path
        self._indices = record.merkle_indices
        self._refreshed = False

    @property
    def snapshot_root(self) -> int:
        return self._snapshot_root

    def is_stale(self, live_root: int) -> bool:
        return self._snapshot_root != live_root

    def refresh(self, live_root: int) -> MembershipWitness:
        """
        Check the cached witness against the live root.

        Raises:
            StaleRootError: If the cached snapshot differs from live_root
        """
        if self.is_stale(live_root):
            logger.info("cached merkle root is stale")
            raise StaleRootError(self._snapshot_root, live_root)
        return MembershipWitness(
            root=live_root,
            path=tuple(self._path),
            indices=tuple(self._indices),
            refreshed=self._refreshed,
        )

    def adopt(
        self, path: Sequence[int], indices: Sequence[int], root: int
    ) -> MembershipWitness:
        """Install a fresh witness obtained for `root`."""
        if len(path) != len(self._path) or len(indices) != len(path):
            raise UserInputError("fresh witness has the wrong depth")
        self._path = tuple(path)
        self._indices = tuple(int(bit) for bit in indices)
        self._snapshot_root = root
        self._refreshed = True
        return self.refresh(root)

    async def refresh_from(
        self, provider: Optional[PathProvider], live_root: int
    ) -> MembershipWitness:
        """
        Refresh against live_root, asking provider for a new path if stale.

        Raises:
            StaleRootError: If stale and no provider can supply the live root's path
        """
        if not self.is_stale(live_root):
            return self.refresh(live_root)
        if provider is None:
            raise StaleRootError(self._snapshot_root, live_root)
        path, indices, root = await provider.fetch_path(self._commitment)
        if root != live_root:
            # Indexer lags the ledger; its path is no better than ours
            raise StaleRootError(root, live_root)
        return self.adopt(path, indices, root)

    def verify(self, hasher: FieldHasher = hash_elements) -> bool:
        """Recompute the root from the cached path using `hasher`."""
        return verify_path(
            self._commitment, self._path, self._indices, self._snapshot_root, hasher
        )
