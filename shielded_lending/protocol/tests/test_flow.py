"""Unit tests for deposit / borrow / exit action flows."""

from __future__ import annotations

import logging

import pytest
import trio
import trio.testing

from shielded_lending.protocol.commitments import create_record
from shielded_lending.protocol.context import SessionContext
from shielded_lending.protocol.exceptions import (
    CommitmentMismatchError,
    ConcurrentSubmissionError,
    InsufficientHealthError,
    InvalidTransitionError,
    LedgerGatewayError,
    LedgerSubmissionError,
    LendingProtocolError,
    NoCommitmentError,
    NullifierUsedError,
    ProofBackendUnavailable,
    StaleRootError,
    UserInputError,
    WalletUnavailable,
)
from shielded_lending.protocol.flow import ActionFlow, ActionState, fetch_pool_status
from shielded_lending.protocol.merkle import build_tree, empty_witness
from shielded_lending.protocol.nullifier import derive
from shielded_lending.protocol.orchestrator import ProofOrchestrator
from shielded_lending.protocol.types import ActionKind, AggregateHealth, TxOutcome

ONE_BTC = 100_000_000
BORROW = 50_000_000_000

HAPPY_PATH = [
    ActionState.IDLE,
    ActionState.PROOF_REQUESTED,
    ActionState.PROOF_GENERATED,
    ActionState.SUBMITTING,
    ActionState.SUCCESS,
]


@pytest.fixture
def flow(context, store, ledger, orchestrator) -> ActionFlow:
    return ActionFlow(context, store, ledger, orchestrator)


def _entrypoints(signer):
    return [call[1] for call in signer.calls]


# ----------------------------------------------------------------------
# Deposit
# ----------------------------------------------------------------------


@pytest.mark.trio
async def test_deposit_persists_record_at_live_root(flow, store, ledger, context, signer) -> None:
    record = await flow.deposit(ONE_BTC)

    assert store.load(context.identity) == record
    assert record.amount == ONE_BTC
    assert record.merkle_root == ledger.root
    assert _entrypoints(signer) == ["deposit"]


@pytest.mark.trio
async def test_reverted_deposit_leaves_store_empty(flow, store, ledger, context) -> None:
    ledger.deposit_outcome = TxOutcome.REVERTED
    ledger.revert_reason = "insufficient allowance"

    with pytest.raises(LedgerSubmissionError, match="insufficient allowance") as exc_info:
        await flow.deposit(ONE_BTC)

    assert exc_info.value.receipt.outcome is TxOutcome.REVERTED
    assert store.load(context.identity) is None


@pytest.mark.trio
async def test_second_deposit_rejected(flow, signer) -> None:
    await flow.deposit(ONE_BTC)
    with pytest.raises(UserInputError):
        await flow.deposit(ONE_BTC)
    assert _entrypoints(signer) == ["deposit"]


@pytest.mark.trio
async def test_deposit_needs_signer(store, ledger, orchestrator, context) -> None:
    unsigned = SessionContext(context.identity, context.rpc_url, context.vault_address)
    flow = ActionFlow(unsigned, store, ledger, orchestrator)
    with pytest.raises(WalletUnavailable):
        await flow.deposit(ONE_BTC)
    assert ledger.leaves == []


@pytest.mark.trio
async def test_deposit_commitment_mismatch_is_raised_with_record_kept(
    flow, ledger, store, context
) -> None:
    ledger.reported_commitment = 1

    with pytest.raises(CommitmentMismatchError) as exc_info:
        await flow.deposit(ONE_BTC)

    assert exc_info.value.reported == 1
    assert store.load(context.identity) == exc_info.value.record


@pytest.mark.trio
async def test_root_read_failure_before_deposit_sends_nothing(
    flow, ledger, store, context, signer
) -> None:
    ledger.fail_views = True
    with pytest.raises(LedgerGatewayError):
        await flow.deposit(ONE_BTC)
    assert signer.calls == []
    assert store.load(context.identity) is None


def _drop_node_after_deposit(ledger):
    send_deposit = ledger.deposit

    async def deposit(amount):
        result = await send_deposit(amount)
        ledger.fail_views = True
        return result

    ledger.deposit = deposit


@pytest.mark.trio
async def test_accepted_deposit_kept_when_root_read_fails(
    flow, ledger, store, context, caplog
) -> None:
    root_before = ledger.root
    _drop_node_after_deposit(ledger)

    with caplog.at_level(logging.WARNING, logger="shielded_lending.protocol.flow"):
        record = await flow.deposit(ONE_BTC)

    assert len(ledger.leaves) == 1
    assert store.load(context.identity) == record
    assert record.merkle_root == root_before
    assert "witness refresh failed" in caplog.text


@pytest.mark.trio
async def test_accepted_deposit_kept_when_path_fetch_fails(
    context, store, ledger, orchestrator
) -> None:
    # The fake ledger indexes deposits under an opaque leaf, so fetch_path fails
    flow = ActionFlow(context, store, ledger, orchestrator, path_provider=ledger)

    record = await flow.deposit(ONE_BTC)

    assert store.load(context.identity) == record
    assert record.salt != 0


# ----------------------------------------------------------------------
# Borrow
# ----------------------------------------------------------------------


@pytest.mark.trio
async def test_borrow_happy_path(flow, store, ledger, signer, backend, context) -> None:
    record = await flow.deposit(ONE_BTC)

    receipt = await flow.borrow(BORROW)

    assert receipt.accepted
    assert flow.state is ActionState.SUCCESS
    assert flow.transitions == HAPPY_PATH
    assert _entrypoints(signer) == ["deposit", "borrow"]
    assert derive(record.commitment, ActionKind.BORROW, BORROW) in ledger.used_nullifiers
    # Borrowing keeps the collateral position
    assert store.load(context.identity) == record
    assert backend.requests[0]["min_health_factor"] == "110"


@pytest.mark.trio
async def test_borrow_without_deposit_makes_no_remote_call(flow, ledger, backend) -> None:
    with pytest.raises(NoCommitmentError):
        await flow.borrow(BORROW)

    assert ledger.view_calls == []
    assert backend.requests == []
    assert flow.state is ActionState.ERROR
    assert isinstance(flow.last_error, NoCommitmentError)


@pytest.mark.trio
async def test_insufficient_health_blocks_before_proof(flow, ledger, backend) -> None:
    await flow.deposit(ONE_BTC)
    ledger.view_calls.clear()

    # 65,000 / 60,000 < 1.1
    with pytest.raises(InsufficientHealthError) as exc_info:
        await flow.borrow(60_000_000_000)

    assert exc_info.value.ratio < exc_info.value.min_ratio
    assert ledger.view_calls == []
    assert backend.requests == []


@pytest.mark.trio
async def test_outstanding_debt_counts_toward_health(flow) -> None:
    await flow.deposit(ONE_BTC)
    with pytest.raises(InsufficientHealthError):
        await flow.borrow(10_000_000_000, outstanding_debt=50_000_000_000)


@pytest.mark.trio
@pytest.mark.parametrize("amount", [0, -5, None])
async def test_invalid_borrow_amount(flow, ledger, amount) -> None:
    await flow.deposit(ONE_BTC)
    ledger.view_calls.clear()
    with pytest.raises(UserInputError):
        await flow.prepare(ActionKind.BORROW, amount)
    assert ledger.view_calls == []


@pytest.mark.trio
async def test_no_identity(store, ledger, orchestrator) -> None:
    flow = ActionFlow(SessionContext(None, "http://x", "0x1"), store, ledger, orchestrator)
    with pytest.raises(WalletUnavailable):
        await flow.borrow(BORROW)
    assert ledger.view_calls == []


@pytest.mark.trio
async def test_same_borrow_twice_hits_used_nullifier(flow, backend, signer) -> None:
    await flow.deposit(ONE_BTC)
    await flow.borrow(BORROW)

    with pytest.raises(NullifierUsedError):
        await flow.borrow(BORROW)

    assert len(backend.requests) == 1
    assert _entrypoints(signer) == ["deposit", "borrow"]


@pytest.mark.trio
async def test_root_and_nullifier_fetched_together(flow, ledger) -> None:
    await flow.deposit(ONE_BTC)
    ledger.view_calls.clear()
    await flow.prepare(ActionKind.BORROW, BORROW)
    assert sorted(ledger.view_calls) == ["get_merkle_root", "is_nullifier_used"]


@pytest.mark.trio
async def test_gateway_failure_is_reported_plainly(flow, ledger) -> None:
    await flow.deposit(ONE_BTC)
    ledger.fail_views = True
    with pytest.raises(LedgerGatewayError):
        await flow.prepare(ActionKind.BORROW, BORROW)
    assert flow.state is ActionState.ERROR


@pytest.mark.trio
async def test_stale_root_without_provider(flow, ledger, backend) -> None:
    await flow.deposit(ONE_BTC)
    ledger.leaves.append(0xBEEF)

    with pytest.raises(StaleRootError):
        await flow.borrow(BORROW)
    assert backend.requests == []


def _seed_position(store, ledger, identity, salt=77):
    path, indices = empty_witness()
    draft = create_record(identity, ONE_BTC, 0, path, indices, salt=salt)
    ledger.leaves[:] = [draft.commitment]
    root, witnesses = build_tree(ledger.leaves)
    record = create_record(identity, ONE_BTC, root, *witnesses[0], salt=salt)
    store.save(identity, record)
    return record


@pytest.mark.trio
async def test_stale_root_refreshed_from_provider(context, store, ledger, orchestrator, backend) -> None:
    record = _seed_position(store, ledger, context.identity)
    ledger.leaves.append(0xBEEF)
    flow = ActionFlow(context, store, ledger, orchestrator, path_provider=ledger)

    receipt = await flow.borrow(BORROW)

    assert receipt.accepted
    assert backend.requests[0]["merkle_root"] == str(ledger.root)
    # The refreshed path is not written back
    assert store.load(context.identity) == record


@pytest.mark.trio
async def test_lagging_provider_is_stale(context, store, ledger, orchestrator) -> None:
    _seed_position(store, ledger, context.identity)
    ledger.leaves.append(0xBEEF)
    ledger.path_root_lag = True
    flow = ActionFlow(context, store, ledger, orchestrator, path_provider=ledger)

    with pytest.raises(StaleRootError):
        await flow.borrow(BORROW)


@pytest.mark.trio
async def test_backend_unavailable(context, store, ledger, make_backend, signer) -> None:
    flow = ActionFlow(
        context, store, ledger, ProofOrchestrator(make_backend(available=False))
    )
    await flow.deposit(ONE_BTC)

    with pytest.raises(ProofBackendUnavailable):
        await flow.borrow(BORROW)

    assert flow.state is ActionState.ERROR
    assert _entrypoints(signer) == ["deposit"]


@pytest.mark.trio
async def test_reverted_borrow(flow, ledger, store, context) -> None:
    record = await flow.deposit(ONE_BTC)
    ledger.outcome = TxOutcome.REVERTED
    ledger.revert_reason = "vault health too low"

    with pytest.raises(LedgerSubmissionError, match="vault health too low") as exc_info:
        await flow.borrow(BORROW)

    assert exc_info.value.receipt.outcome is TxOutcome.REVERTED
    assert flow.state is ActionState.ERROR
    assert flow.transitions[-2:] == [ActionState.SUBMITTING, ActionState.ERROR]
    assert store.load(context.identity) == record


@pytest.mark.trio
async def test_timed_out_borrow(flow, ledger) -> None:
    await flow.deposit(ONE_BTC)
    ledger.outcome = TxOutcome.TIMED_OUT
    with pytest.raises(LedgerSubmissionError) as exc_info:
        await flow.borrow(BORROW)
    assert exc_info.value.receipt.outcome is TxOutcome.TIMED_OUT


@pytest.mark.trio
async def test_root_moved_between_proof_and_submit(flow, ledger, signer) -> None:
    await flow.deposit(ONE_BTC)
    artifact = await flow.prepare(ActionKind.BORROW, BORROW)
    ledger.leaves.append(0xBEEF)

    with pytest.raises(StaleRootError):
        await flow.submit(artifact)
    assert _entrypoints(signer) == ["deposit"]


@pytest.mark.trio
async def test_submit_is_single_flight(flow, ledger) -> None:
    await flow.deposit(ONE_BTC)
    artifact = await flow.prepare(ActionKind.BORROW, BORROW)
    ledger.invoke_delay = 0.05

    async with trio.open_nursery() as nursery:
        nursery.start_soon(flow.submit, artifact)
        await trio.testing.wait_all_tasks_blocked()
        assert flow.state is ActionState.SUBMITTING
        with pytest.raises(ConcurrentSubmissionError):
            await flow.submit(artifact)
        with pytest.raises(ConcurrentSubmissionError):
            flow.reset()

    assert flow.state is ActionState.SUCCESS


@pytest.mark.trio
async def test_overlapping_submits_leave_first_untouched(
    flow, ledger, store, context, signer
) -> None:
    await flow.deposit(ONE_BTC)
    artifact = await flow.prepare(ActionKind.EXIT)
    ledger.invoke_delay = 0.05
    outcomes = []

    async def _attempt():
        try:
            outcomes.append(await flow.submit(artifact))
        except LendingProtocolError as exc:
            outcomes.append(exc)

    # Both start before either reads the live root
    async with trio.open_nursery() as nursery:
        nursery.start_soon(_attempt)
        nursery.start_soon(_attempt)

    accepted = [o for o in outcomes if not isinstance(o, Exception)]
    rejected = [o for o in outcomes if isinstance(o, Exception)]
    assert len(accepted) == 1 and accepted[0].accepted
    assert len(rejected) == 1 and isinstance(rejected[0], ConcurrentSubmissionError)
    assert flow.state is ActionState.SUCCESS
    assert store.load(context.identity) is None
    assert _entrypoints(signer) == ["deposit", "emergency_exit"]


@pytest.mark.trio
async def test_submit_without_proof(flow) -> None:
    with pytest.raises(InvalidTransitionError):
        await flow.submit()


@pytest.mark.trio
async def test_cancel_returns_to_idle(context, store, ledger, make_backend, signer) -> None:
    backend = make_backend(delay=100)
    flow = ActionFlow(context, store, ledger, ProofOrchestrator(backend, timeout=200))
    await flow.deposit(ONE_BTC)
    results = []

    async def _prepare():
        results.append(await flow.prepare(ActionKind.BORROW, BORROW))

    async with trio.open_nursery() as nursery:
        nursery.start_soon(_prepare)
        await trio.testing.wait_all_tasks_blocked()
        assert flow.state is ActionState.PROOF_REQUESTED
        flow.cancel()

    assert results == [None]
    assert flow.state is ActionState.IDLE
    assert _entrypoints(signer) == ["deposit"]


@pytest.mark.trio
async def test_prepare_then_submit_pending(flow) -> None:
    await flow.deposit(ONE_BTC)
    artifact = await flow.prepare(ActionKind.BORROW, BORROW)
    assert flow.pending_artifact == artifact
    receipt = await flow.submit()
    assert receipt.accepted
    assert flow.pending_artifact is None


@pytest.mark.trio
async def test_adopted_artifact_from_earlier_session(context, store, ledger, backend, signer) -> None:
    first = ActionFlow(context, store, ledger, ProofOrchestrator(backend))
    await first.deposit(ONE_BTC)
    artifact = await first.prepare(ActionKind.BORROW, BORROW)

    second = ActionFlow(context, store, ledger, ProofOrchestrator(backend))
    second.adopt_artifact(artifact)
    receipt = await second.submit(artifact)

    assert receipt.accepted
    assert _entrypoints(signer) == ["deposit", "borrow"]


# ----------------------------------------------------------------------
# Exit
# ----------------------------------------------------------------------


@pytest.mark.trio
async def test_exit_clears_record(flow, store, context, signer, ledger) -> None:
    record = await flow.deposit(ONE_BTC)

    receipt = await flow.exit()

    assert receipt.accepted
    assert store.load(context.identity) is None
    assert _entrypoints(signer) == ["deposit", "emergency_exit"]
    assert derive(record.commitment, ActionKind.EXIT) in ledger.used_nullifiers


@pytest.mark.trio
async def test_failed_exit_keeps_record(flow, store, context, ledger) -> None:
    record = await flow.deposit(ONE_BTC)
    ledger.outcome = TxOutcome.REVERTED

    with pytest.raises(LedgerSubmissionError):
        await flow.exit()
    assert store.load(context.identity) == record


@pytest.mark.trio
async def test_exit_needs_150_percent(flow, backend) -> None:
    await flow.deposit(ONE_BTC)
    # 65,000 / 50,000 = 1.3: fine for a borrow, not for an exit
    with pytest.raises(InsufficientHealthError):
        await flow.exit(outstanding_debt=BORROW)
    assert backend.requests == []


@pytest.mark.trio
async def test_exit_rejects_amount(flow) -> None:
    await flow.deposit(ONE_BTC)
    with pytest.raises(UserInputError):
        await flow.prepare(ActionKind.EXIT, 5)


@pytest.mark.trio
async def test_flow_recovers_after_error(flow, ledger) -> None:
    await flow.deposit(ONE_BTC)
    ledger.outcome = TxOutcome.REVERTED
    with pytest.raises(LedgerSubmissionError):
        await flow.borrow(BORROW)

    ledger.outcome = TxOutcome.ACCEPTED
    receipt = await flow.borrow(BORROW + 1)
    assert receipt.accepted
    assert flow.last_error is None


# ----------------------------------------------------------------------
# Pool
# ----------------------------------------------------------------------


@pytest.mark.trio
async def test_pool_status(ledger) -> None:
    ledger.leaves[:] = [1, 2, 3]
    ledger.aggregate = AggregateHealth(195_000_000_000, 100_000_000_000, 1_950_000)

    status = await fetch_pool_status(ledger)

    assert status.commitment_count == 3
    assert status.merkle_root == ledger.root
    assert status.aggregate.health_factor == 1_950_000
