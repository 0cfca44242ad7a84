"""Shared fakes: in-memory ledger, recording signer, scripted proof backend."""

from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest
import trio

from shielded_lending.ledger.gateway import LedgerGateway
from shielded_lending.protocol.backends.interfaces import ProofBackend
from shielded_lending.protocol.context import SessionContext
from shielded_lending.protocol.exceptions import LedgerGatewayError
from shielded_lending.protocol.merkle import build_tree
from shielded_lending.protocol.orchestrator import ProofOrchestrator
from shielded_lending.protocol.store import CommitmentStore, MemoryTransport
from shielded_lending.protocol.types import (
    AggregateHealth,
    DepositResult,
    TxOutcome,
    TxReceipt,
)

OWNER = "0x4f776e65725f61646472657373"
VAULT = "0x7661756c74"
RPC_URL = "http://ledger.test/rpc"
PROOF = bytes(range(1, 11))


class RecordingSigner:
    def __init__(self, address: str = OWNER) -> None:
        self._address = address
        self.calls: List[Tuple[str, str, List[str]]] = []

    @property
    def address(self) -> str:
        return self._address

    async def invoke(self, contract_address: str, entrypoint: str, calldata: Sequence[str]) -> str:
        self.calls.append((contract_address, entrypoint, list(calldata)))
        return hex(0x7A00 + len(self.calls))


class FakeLedger(LedgerGateway):
    """
    In-memory vault.

    Deposits append an opaque leaf; tests that need the caller's own
    commitment in the tree assign `leaves` directly. Accepted borrow/exit
    calls mark their nullifier as used. Also serves as a PathProvider.
    """

    def __init__(self, context: SessionContext) -> None:
        self._context = context
        self.leaves: List[int] = []
        self.used_nullifiers: set = set()
        self.outcome = TxOutcome.ACCEPTED
        self.revert_reason: Optional[str] = None
        self.deposit_outcome = TxOutcome.ACCEPTED
        self.reported_commitment: Optional[int] = None
        self.aggregate = AggregateHealth(0, 0, 0)
        self.view_calls: List[str] = []
        self.fail_views = False
        self.invoke_delay = 0.0
        self.path_root_lag = False
        self._leaf_ids = itertools.count(0xD00)

    @property
    def root(self) -> int:
        return build_tree(self.leaves)[0]

    async def __aenter__(self) -> "FakeLedger":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    def _view(self, name: str) -> None:
        self.view_calls.append(name)
        if self.fail_views:
            raise LedgerGatewayError(f"{name} failed: node unreachable")

    async def get_merkle_root(self) -> int:
        self._view("get_merkle_root")
        await trio.sleep(0)
        return self.root

    async def get_commitment_count(self) -> int:
        self._view("get_commitment_count")
        return len(self.leaves)

    async def is_nullifier_used(self, nullifier: int) -> bool:
        self._view("is_nullifier_used")
        await trio.sleep(0)
        return nullifier in self.used_nullifiers

    async def get_aggregate_health(self) -> AggregateHealth:
        self._view("get_aggregate_health")
        return self.aggregate

    async def deposit(self, amount: int) -> DepositResult:
        tx_hash = await self._context.require_signer().invoke(
            self._context.vault_address, "deposit", [str(amount), "0"]
        )
        if self.deposit_outcome is not TxOutcome.ACCEPTED:
            return DepositResult(TxReceipt(tx_hash, self.deposit_outcome, self.revert_reason))
        self.leaves.append(next(self._leaf_ids))
        return DepositResult(TxReceipt(tx_hash, TxOutcome.ACCEPTED), self.reported_commitment)

    async def invoke(self, entrypoint: str, calldata: Sequence[str]) -> TxReceipt:
        tx_hash = await self._context.require_signer().invoke(
            self._context.vault_address, entrypoint, list(calldata)
        )
        if self.invoke_delay:
            await trio.sleep(self.invoke_delay)
        if self.outcome is not TxOutcome.ACCEPTED:
            return TxReceipt(tx_hash, self.outcome, self.revert_reason)
        nullifier = int(calldata[-2] if entrypoint == "borrow" else calldata[-1])
        self.used_nullifiers.add(nullifier)
        return TxReceipt(tx_hash, TxOutcome.ACCEPTED)

    async def fetch_path(self, commitment: int):
        root, witnesses = build_tree(self.leaves)
        if commitment not in self.leaves:
            raise LedgerGatewayError("commitment not indexed")
        path, indices = witnesses[self.leaves.index(commitment)]
        if self.path_root_lag:
            root = root ^ 1
        return path, indices, root


class ScriptedProofBackend(ProofBackend):
    name = "scripted"

    def __init__(
        self,
        proof: bytes = PROOF,
        *,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        available: bool = True,
    ) -> None:
        self.proof = proof
        self.error = error
        self.delay = delay
        self.available = available
        self.requests: List[Dict[str, Any]] = []

    def is_available(self) -> bool:
        return self.available

    async def prove(self, inputs: Dict[str, Any]) -> bytes:
        self.requests.append(inputs)
        if self.delay:
            await trio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.proof


@pytest.fixture
def signer() -> RecordingSigner:
    return RecordingSigner()


@pytest.fixture
def context(signer: RecordingSigner) -> SessionContext:
    return SessionContext(identity=OWNER, rpc_url=RPC_URL, vault_address=VAULT, signer=signer)


@pytest.fixture
def ledger(context: SessionContext) -> FakeLedger:
    return FakeLedger(context)


@pytest.fixture
def store() -> CommitmentStore:
    return CommitmentStore(MemoryTransport())


@pytest.fixture
def backend() -> ScriptedProofBackend:
    return ScriptedProofBackend()


@pytest.fixture
def orchestrator(backend: ScriptedProofBackend) -> ProofOrchestrator:
    return ProofOrchestrator(backend, timeout=5)


@pytest.fixture
def make_backend():
    return ScriptedProofBackend


@pytest.fixture
def make_signer():
    return RecordingSigner
