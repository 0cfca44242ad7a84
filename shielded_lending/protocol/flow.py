"""
Action flows for deposit, borrow and emergency exit.

Borrow and exit share one state machine:

    IDLE → PROOF_REQUESTED → PROOF_GENERATED → SUBMITTING → SUCCESS
    Any state before SUBMITTING → ERROR or IDLE
    SUBMITTING → SUCCESS | ERROR (terminal, no retries)

Local validation (identity, amounts, stored record, health gate) runs
before any remote call. The commitment store is written only after a
confirmed deposit and cleared only after a confirmed exit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import trio

from ..ledger.gateway import LedgerGateway
from ..ledger.submitter import ActionSubmitter
from .commitments import create_record, generate_salt, validate_amount
from .context import SessionContext
from .exceptions import (
    CommitmentMismatchError,
    ConcurrentSubmissionError,
    InsufficientHealthError,
    InvalidTransitionError,
    LedgerGatewayError,
    LedgerSubmissionError,
    LendingProtocolError,
    NoCommitmentError,
    NullifierUsedError,
    ProofBindingError,
    StaleRootError,
    UserInputError,
)
from .fields import FieldHasher, hash_elements
from .health import check_threshold, evaluate_units, min_ratio_for
from .merkle import MerkleTracker, PathProvider, empty_witness
from .nullifier import derive
from .orchestrator import OraclePrices, ProofOrchestrator, assemble_inputs
from .store import CommitmentStore
from .types import (
    ActionKind,
    AggregateHealth,
    CommitmentRecord,
    ProofArtifact,
    TxReceipt,
)

logger = logging.getLogger(__name__)


class ActionState(Enum):
    IDLE = "idle"
    PROOF_REQUESTED = "proof_requested"
    PROOF_GENERATED = "proof_generated"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    ERROR = "error"


# Valid transitions: {from_state: {allowed_to_states}}
_TRANSITIONS: Dict[ActionState, set] = {
    ActionState.IDLE: {ActionState.PROOF_REQUESTED, ActionState.ERROR},
    ActionState.PROOF_REQUESTED: {
        ActionState.PROOF_GENERATED,
        ActionState.ERROR,
        ActionState.IDLE,
    },
    ActionState.PROOF_GENERATED: {
        ActionState.SUBMITTING,
        ActionState.ERROR,
        ActionState.IDLE,
    },
    ActionState.SUBMITTING: {ActionState.SUCCESS, ActionState.ERROR},
    ActionState.SUCCESS: {ActionState.IDLE},
    ActionState.ERROR: {ActionState.IDLE},
}


@dataclass(frozen=True)
class PoolStatus:
    merkle_root: int
    commitment_count: int
    aggregate: AggregateHealth


async def _gather(calls: Dict[str, Callable[[], Awaitable[Any]]]) -> Dict[str, Any]:
    """Run independent remote reads concurrently; re-raise the first protocol error."""
    results: Dict[str, Any] = {}
    errors: List[LendingProtocolError] = []

    async def _run(key: str, call: Callable[[], Awaitable[Any]]) -> None:
        try:
            results[key] = await call()
        except LendingProtocolError as exc:
            errors.append(exc)

    async with trio.open_nursery() as nursery:
        for key, call in calls.items():
            nursery.start_soon(_run, key, call)

    if errors:
        raise errors[0]
    return results


async def fetch_pool_status(gateway: LedgerGateway) -> PoolStatus:
    results = await _gather(
        {
            "root": gateway.get_merkle_root,
            "count": gateway.get_commitment_count,
            "aggregate": gateway.get_aggregate_health,
        }
    )
    return PoolStatus(results["root"], results["count"], results["aggregate"])


class ActionFlow:
    """
    Drive one identity's actions against the ledger.

    Example:
        flow = ActionFlow(context, store, gateway, ProofOrchestrator(backend))
        receipt = await flow.borrow(50_000_000_000)
    """

    def __init__(
        self,
        context: SessionContext,
        store: CommitmentStore,
        gateway: LedgerGateway,
        orchestrator: ProofOrchestrator,
        *,
        path_provider: Optional[PathProvider] = None,
        prices: OraclePrices = OraclePrices(),
        hasher: FieldHasher = hash_elements,
    ) -> None:
        self._context = context
        self._store = store
        self._gateway = gateway
        self._orchestrator = orchestrator
        self._submitter = ActionSubmitter(gateway)
        self._path_provider = path_provider
        self._prices = prices
        self._hasher = hasher

        self._state = ActionState.IDLE
        self._pending: Optional[ProofArtifact] = None
        self._cancel_scope: Optional[trio.CancelScope] = None
        self.transitions: List[ActionState] = [ActionState.IDLE]
        self.last_error: Optional[LendingProtocolError] = None

    @property
    def state(self) -> ActionState:
        return self._state

    @property
    def pending_artifact(self) -> Optional[ProofArtifact]:
        return self._pending

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: ActionState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(
                f"Invalid action transition: {self._state.value} → {target.value}"
            )
        logger.debug("action state %s → %s", self._state.value, target.value)
        self._state = target
        self.transitions.append(target)

    def _fail(self, exc: LendingProtocolError) -> None:
        self.last_error = exc
        self._pending = None
        if self._state is not ActionState.ERROR:
            self._transition(ActionState.ERROR)

    def reset(self) -> None:
        """Return a finished or abandoned action to IDLE."""
        if self._state is ActionState.SUBMITTING:
            raise ConcurrentSubmissionError("cannot reset while submitting")
        if self._state is not ActionState.IDLE:
            self._transition(ActionState.IDLE)
        self._pending = None

    def cancel(self) -> None:
        """Abandon an in-flight root fetch or proof request."""
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()

    # ------------------------------------------------------------------
    # Deposit
    # ------------------------------------------------------------------

    async def deposit(self, amount: int) -> CommitmentRecord:
        """
        Deposit collateral and persist the new commitment record.

        The record is saved as soon as the ledger accepts the deposit, with the
        root observed before sending. Reading the post-deposit root and path
        afterwards is best effort; if it fails the saved record is returned
        and the next action sees a stale root.

        Raises:
            WalletUnavailable: No identity or signer
            UserInputError: Invalid amount, or the identity already holds a position
            LedgerGatewayError: Pre-deposit root could not be read (nothing sent)
            LedgerSubmissionError: Deposit reverted or timed out
            CommitmentMismatchError: Ledger recorded another commitment (record kept)
        """
        owner = self._context.require_identity()
        self._context.require_signer()
        validate_amount(amount)
        if self._store.load(owner) is not None:
            raise UserInputError("identity already holds an active position")

        salt = generate_salt()
        path, indices = empty_witness()
        record = create_record(
            owner,
            amount,
            await self._gateway.get_merkle_root(),
            path,
            indices,
            salt=salt,
            hasher=self._hasher,
        )

        result = await self._gateway.deposit(amount)
        if not result.receipt.accepted:
            raise LedgerSubmissionError(
                f"deposit {result.receipt.outcome.value}: {result.receipt.revert_reason}",
                result.receipt,
            )
        # The salt exists nowhere else; persist before any further remote read
        self._store.save(owner, record)
        logger.info("deposit confirmed in %s", result.receipt.tx_hash)

        try:
            record = await self._refresh_deposit_witness(record)
        except LedgerGatewayError as exc:
            logger.warning("deposit saved with pre-deposit root; witness refresh failed: %s", exc)
        else:
            self._store.save(owner, record)

        if result.commitment is not None and result.commitment != record.commitment:
            raise CommitmentMismatchError(record, result.commitment)
        return record

    async def _refresh_deposit_witness(self, record: CommitmentRecord) -> CommitmentRecord:
        if self._path_provider is not None:
            path, indices, root = await self._path_provider.fetch_path(record.commitment)
        else:
            path, indices = empty_witness()
            root = await self._gateway.get_merkle_root()
        return create_record(
            record.owner,
            record.amount,
            root,
            path,
            indices,
            salt=record.salt,
            created_at=record.created_at,
            hasher=self._hasher,
        )

    # ------------------------------------------------------------------
    # Borrow / exit
    # ------------------------------------------------------------------

    def _local_checks(
        self, kind: ActionKind, borrow_amount: Optional[int], outstanding_debt: int
    ) -> tuple:
        owner = self._context.require_identity()
        if isinstance(outstanding_debt, bool) or not isinstance(outstanding_debt, int):
            raise UserInputError("outstanding_debt must be an integer")
        if outstanding_debt < 0:
            raise UserInputError("outstanding_debt must not be negative")

        if kind is ActionKind.BORROW:
            if borrow_amount is None:
                raise UserInputError("borrow amount is required")
            validate_amount(borrow_amount, "borrow_amount")
            debt = outstanding_debt + borrow_amount
        else:
            if borrow_amount:
                raise UserInputError("exit takes no borrow amount")
            borrow_amount = 0
            debt = outstanding_debt

        record = self._store.load(owner)
        if record is None:
            raise NoCommitmentError(f"no commitment stored for {owner}; deposit first")

        ratio = evaluate_units(
            record.amount, debt, self._prices.btc_price, self._prices.usdc_price
        )
        minimum = min_ratio_for(kind)
        if not check_threshold(ratio, minimum):
            raise InsufficientHealthError(ratio, minimum)

        nullifier = derive(
            record.commitment,
            kind,
            borrow_amount if kind is ActionKind.BORROW else None,
            hasher=self._hasher,
        )
        return owner, record, borrow_amount, nullifier

    async def prepare(
        self,
        kind: ActionKind,
        borrow_amount: Optional[int] = None,
        *,
        outstanding_debt: int = 0,
    ) -> Optional[ProofArtifact]:
        """
        Validate, gate on health, and obtain a bound proof.

        Returns:
            The artifact (state PROOF_GENERATED), or None if cancelled (state IDLE)

        Raises:
            UserInputError, WalletUnavailable, NoCommitmentError,
            InsufficientHealthError: local failures, no remote call made
            NullifierUsedError, StaleRootError, ProofBackendUnavailable,
            LedgerGatewayError: remote failures
        """
        if self._state in (ActionState.SUCCESS, ActionState.ERROR, ActionState.PROOF_GENERATED):
            self.reset()
        if self._state is not ActionState.IDLE:
            raise InvalidTransitionError(f"action already in progress ({self._state.value})")
        self.last_error = None

        try:
            owner, record, borrow_amount, nullifier = self._local_checks(
                kind, borrow_amount, outstanding_debt
            )
        except LendingProtocolError as exc:
            self._fail(exc)
            raise

        self._transition(ActionState.PROOF_REQUESTED)
        artifact = None
        try:
            with trio.CancelScope() as scope:
                self._cancel_scope = scope
                ledger = await _gather(
                    {
                        "root": self._gateway.get_merkle_root,
                        "used": lambda: self._gateway.is_nullifier_used(nullifier),
                    }
                )
                if ledger["used"]:
                    raise NullifierUsedError(f"{kind.value} nullifier already used")

                witness = await MerkleTracker(record).refresh_from(
                    self._path_provider, ledger["root"]
                )
                proof_input = assemble_inputs(
                    record,
                    witness,
                    kind,
                    owner,
                    nullifier,
                    borrow_amount=borrow_amount,
                    prices=self._prices,
                )
                artifact = await self._orchestrator.request_proof(proof_input)
        except LendingProtocolError as exc:
            self._fail(exc)
            raise
        except BaseException:
            self._pending = None
            self._transition(ActionState.IDLE)
            raise
        finally:
            self._cancel_scope = None

        if scope.cancelled_caught or artifact is None:
            logger.info("%s action cancelled", kind.value)
            self._transition(ActionState.IDLE)
            return None

        self._pending = artifact
        self._transition(ActionState.PROOF_GENERATED)
        return artifact

    def adopt_artifact(self, artifact: ProofArtifact) -> None:
        """Resume with a proof generated in an earlier session."""
        self.reset()
        self._transition(ActionState.PROOF_REQUESTED)
        self._pending = artifact
        self._transition(ActionState.PROOF_GENERATED)

    async def submit(self, artifact: Optional[ProofArtifact] = None) -> TxReceipt:
        """
        Submit the generated proof once.

        Raises:
            ConcurrentSubmissionError: Already submitting
            StaleRootError: Pool root moved since the proof was generated
            LedgerSubmissionError: Reverted, rejected or timed out
        """
        if self._state is ActionState.SUBMITTING:
            raise ConcurrentSubmissionError("a submission is already in flight")
        artifact = artifact or self._pending
        if self._state is not ActionState.PROOF_GENERATED or artifact is None:
            raise InvalidTransitionError("no generated proof to submit")

        public = artifact.public_inputs
        try:
            owner = self._context.require_identity()
            self._context.require_signer()
            if public.owner != owner:
                raise ProofBindingError("proof was generated for another identity")
        except LendingProtocolError as exc:
            self._fail(exc)
            raise

        # Claimed before the first await: overlapping callers see SUBMITTING
        self._transition(ActionState.SUBMITTING)
        try:
            live_root = await self._gateway.get_merkle_root()
            if live_root != public.merkle_root:
                raise StaleRootError(public.merkle_root, live_root)
            receipt = await self._submitter.submit(public.kind, artifact, public)
            if not receipt.accepted:
                raise LedgerSubmissionError(
                    f"{public.kind.value} {receipt.outcome.value}"
                    + (f": {receipt.revert_reason}" if receipt.revert_reason else ""),
                    receipt,
                )
        except LendingProtocolError as exc:
            self._fail(exc)
            raise
        except BaseException:
            # Cancelled mid-submission; outcome unknown
            self._fail(LedgerSubmissionError("submission interrupted"))
            raise

        self._transition(ActionState.SUCCESS)
        self._pending = None
        if public.kind is ActionKind.EXIT:
            # Exit closes the position; a borrow leaves the collateral record as is
            self._store.delete(owner)
        return receipt

    async def borrow(
        self, amount: int, *, outstanding_debt: int = 0
    ) -> Optional[TxReceipt]:
        artifact = await self.prepare(
            ActionKind.BORROW, amount, outstanding_debt=outstanding_debt
        )
        if artifact is None:
            return None
        return await self.submit(artifact)

    async def exit(self, *, outstanding_debt: int = 0) -> Optional[TxReceipt]:
        artifact = await self.prepare(ActionKind.EXIT, outstanding_debt=outstanding_debt)
        if artifact is None:
            return None
        return await self.submit(artifact)
