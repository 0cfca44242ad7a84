"""
Command-Line Interface for the shielded lending toolkit

Deposit collateral, inspect positions and the pool, generate and submit
borrow / emergency-exit proofs, and back up the local commitment record.
"""

import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
import trio
from rich.console import Console
from rich.table import Table

from shielded_lending import __version__
from shielded_lending.ledger import JsonRpcLedgerGateway
from shielded_lending.protocol.config import (
    BTC_DECIMALS,
    HEALTH_FACTOR_SCALE,
    PRICE_DECIMALS,
    USDC_DECIMALS,
)
from shielded_lending.protocol.context import SessionContext
from shielded_lending.protocol.exceptions import ConfigurationError, LendingProtocolError
from shielded_lending.protocol.factory import get_proof_backend
from shielded_lending.protocol.fields import format_units, parse_units
from shielded_lending.protocol.flow import ActionFlow, fetch_pool_status
from shielded_lending.protocol.health import classify, evaluate_units
from shielded_lending.protocol.orchestrator import OraclePrices, ProofOrchestrator
from shielded_lending.protocol.settings import Settings, load_settings
from shielded_lending.protocol.signers import CommandSigner
from shielded_lending.protocol.store import CommitmentStore, FernetCipher, FileTransport
from shielded_lending.protocol.types import ActionKind, ProofArtifact

console = Console()

_HEALTH_STYLES = {"healthy": "green", "warning": "yellow", "danger": "red"}


@dataclass
class CliState:
    settings: Settings
    identity: Optional[str]
    verbose: bool = False


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------

def build_store(settings: Settings) -> CommitmentStore:
    cipher = None
    if settings.store_key:
        try:
            cipher = FernetCipher(settings.store_key.encode("ascii"))
        except ValueError as e:
            raise ConfigurationError(f"invalid store_key: {e}") from e
    return CommitmentStore(FileTransport(settings.store_dir), cipher)


def build_signer(settings: Settings, identity: Optional[str]):
    if not identity:
        return None
    try:
        return CommandSigner(identity, settings.signer_command)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def build_context(state: CliState) -> SessionContext:
    settings = state.settings
    return SessionContext(
        identity=state.identity,
        rpc_url=settings.rpc_url,
        vault_address=settings.vault_address,
        signer=build_signer(settings, state.identity),
    )


def open_gateway(context: SessionContext, settings: Settings):
    return JsonRpcLedgerGateway(context, submission_timeout=settings.submission_timeout)


def build_orchestrator(settings: Settings) -> ProofOrchestrator:
    try:
        backend = get_proof_backend(
            settings.proof_backend,
            options={"command": settings.prover_command, "workdir": settings.prover_workdir},
        )
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    return ProofOrchestrator(backend, timeout=settings.proof_timeout)


def _prices(settings: Settings) -> OraclePrices:
    return OraclePrices(btc_price=settings.btc_price, usdc_price=settings.usdc_price)


@contextmanager
def _handle_errors(state: CliState):
    """Protocol errors exit non-zero with a red message."""
    try:
        yield
    except LendingProtocolError as e:
        click.echo(click.style(f"✗ {type(e).__name__}: {e}", fg="red"), err=True)
        if state.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


def _run(state: CliState, async_fn, *args):
    with _handle_errors(state):
        return trio.run(async_fn, *args)


def _fail(message: str) -> None:
    click.echo(click.style(f"✗ {message}", fg="red"), err=True)
    sys.exit(1)


def _receipt_line(action: str, receipt) -> None:
    click.echo(click.style(f"✓ {action} accepted: {receipt.tx_hash}", fg="green"))


def _health_text(ratio) -> str:
    if ratio == float("inf"):
        return "[green]∞ (no debt)[/green]"
    band = classify(ratio)
    return f"[{_HEALTH_STYLES[band]}]{float(ratio):.2f} ({band})[/{_HEALTH_STYLES[band]}]"


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="YAML settings file (default: ~/.shielded-lending/config.yaml)",
)
@click.option(
    "--identity",
    envvar="SHIELDED_LENDING_IDENTITY",
    help="Account address to act for (default: account_address from settings)",
)
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, config_path, identity, verbose):
    """
    Shielded lending toolkit

    Private collateralized borrowing: commitments, Merkle membership,
    nullifiers and proof inputs for the lending vault.
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    try:
        settings = load_settings(config_path)
    except LendingProtocolError as e:
        _fail(f"{type(e).__name__}: {e}")
    ctx.obj = CliState(settings, identity or settings.account_address, verbose)


@main.command()
@click.argument("amount")
@click.pass_obj
def deposit(state: CliState, amount):
    """Deposit AMOUNT of BTC collateral (e.g. 1.0)."""

    async def _deposit():
        satoshis = parse_units(amount, BTC_DECIMALS, "amount")
        context = build_context(state)
        store = build_store(state.settings)
        async with open_gateway(context, state.settings) as gateway:
            flow = ActionFlow(
                context,
                store,
                gateway,
                build_orchestrator(state.settings),
                prices=_prices(state.settings),
            )
            return await flow.deposit(satoshis)

    record = _run(state, _deposit)
    click.echo(click.style(f"✓ Deposited {amount} BTC", fg="green"))
    click.echo(f"  Commitment: {hex(record.commitment)}")
    click.echo("  Back up your position with: shielded-lending export")


@main.command()
@click.option("--debt", default="0", help="Outstanding debt in USDC")
@click.pass_obj
def status(state: CliState, debt):
    """Show the local position and whether its Merkle root is current."""

    async def _status():
        context = build_context(state)
        owner = context.require_identity()
        record = build_store(state.settings).load(owner)
        if record is None:
            return None, None
        async with open_gateway(context, state.settings) as gateway:
            live_root = await gateway.get_merkle_root()
        return record, live_root

    record, live_root = _run(state, _status)
    if record is None:
        click.echo(click.style("No active position. Deposit first.", fg="yellow"))
        return

    with _handle_errors(state):
        debt_units = parse_units(debt, USDC_DECIMALS, "debt")
    ratio = evaluate_units(
        record.amount, debt_units, state.settings.btc_price, state.settings.usdc_price
    )
    created = datetime.fromtimestamp(record.created_at, tz=timezone.utc)

    table = Table(title="Position", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Owner", record.owner)
    table.add_row("Collateral", f"{format_units(record.amount, BTC_DECIMALS)} BTC")
    table.add_row("Commitment", hex(record.commitment))
    table.add_row("Created", created.isoformat(timespec="seconds"))
    table.add_row("Health factor", _health_text(ratio))
    if live_root == record.merkle_root:
        table.add_row("Merkle root", "[green]current[/green]")
    else:
        table.add_row("Merkle root", "[yellow]stale (fresh Merkle path needed)[/yellow]")
    console.print(table)


@main.command()
@click.pass_obj
def pool(state: CliState):
    """Show aggregate vault health, commitment count and Merkle root."""

    async def _pool():
        async with open_gateway(build_context(state), state.settings) as gateway:
            return await fetch_pool_status(gateway)

    pool_status = _run(state, _pool)
    aggregate = pool_status.aggregate

    table = Table(title="Vault", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Collateral (USD)", format_units(aggregate.collateral_usd, PRICE_DECIMALS))
    table.add_row("Debt (USD)", format_units(aggregate.debt_usd, PRICE_DECIMALS))
    if aggregate.debt_usd == 0:
        table.add_row("Health factor", _health_text(float("inf")))
    else:
        table.add_row(
            "Health factor",
            _health_text(aggregate.health_factor / HEALTH_FACTOR_SCALE),
        )
    table.add_row("Positions", str(pool_status.commitment_count))
    table.add_row("Merkle root", hex(pool_status.merkle_root))
    console.print(table)


_debt_option = click.option("--debt", default="0", help="Outstanding debt in USDC")


async def _prepare(state: CliState, kind: ActionKind, amount: Optional[str], debt: str):
    borrow_amount = parse_units(amount, USDC_DECIMALS, "amount") if amount else None
    debt_units = parse_units(debt, USDC_DECIMALS, "debt")
    context = build_context(state)
    async with open_gateway(context, state.settings) as gateway:
        flow = ActionFlow(
            context,
            build_store(state.settings),
            gateway,
            build_orchestrator(state.settings),
            prices=_prices(state.settings),
        )
        return await flow.prepare(kind, borrow_amount, outstanding_debt=debt_units)


async def _act(state: CliState, kind: ActionKind, amount: Optional[str], debt: str):
    borrow_amount = parse_units(amount, USDC_DECIMALS, "amount") if amount else None
    debt_units = parse_units(debt, USDC_DECIMALS, "debt")
    context = build_context(state)
    async with open_gateway(context, state.settings) as gateway:
        flow = ActionFlow(
            context,
            build_store(state.settings),
            gateway,
            build_orchestrator(state.settings),
            prices=_prices(state.settings),
        )
        if kind is ActionKind.BORROW:
            return await flow.borrow(borrow_amount, outstanding_debt=debt_units)
        return await flow.exit(outstanding_debt=debt_units)


@main.group()
def prove():
    """Generate a proof and save it for a later submit."""


@prove.command("borrow")
@click.argument("amount")
@_debt_option
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path), required=True)
@click.pass_obj
def prove_borrow(state: CliState, amount, debt, out_path):
    """Prove a borrow of AMOUNT USDC."""
    artifact = _run(state, _prepare, state, ActionKind.BORROW, amount, debt)
    _write_artifact(artifact, out_path)


@prove.command("exit")
@_debt_option
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path), required=True)
@click.pass_obj
def prove_exit(state: CliState, debt, out_path):
    """Prove an emergency exit."""
    artifact = _run(state, _prepare, state, ActionKind.EXIT, None, debt)
    _write_artifact(artifact, out_path)


def _write_artifact(artifact: Optional[ProofArtifact], out_path: Path) -> None:
    if artifact is None:
        _fail("Proof generation cancelled")
    out_path.write_bytes(artifact.to_bytes())
    click.echo(click.style(f"✓ Proof saved to: {out_path}", fg="green"))


@main.command()
@click.argument("proof_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def submit(state: CliState, proof_file):
    """Submit a proof saved by `prove`."""

    async def _submit():
        artifact = ProofArtifact.from_bytes(proof_file.read_bytes())
        context = build_context(state)
        async with open_gateway(context, state.settings) as gateway:
            flow = ActionFlow(
                context,
                build_store(state.settings),
                gateway,
                build_orchestrator(state.settings),
                prices=_prices(state.settings),
            )
            flow.adopt_artifact(artifact)
            return artifact.public_inputs.kind, await flow.submit(artifact)

    kind, receipt = _run(state, _submit)
    _receipt_line(kind.value, receipt)


@main.command()
@click.argument("amount")
@_debt_option
@click.pass_obj
def borrow(state: CliState, amount, debt):
    """Borrow AMOUNT USDC against the shielded collateral."""
    receipt = _run(state, _act, state, ActionKind.BORROW, amount, debt)
    if receipt is None:
        _fail("Borrow cancelled")
    _receipt_line("borrow", receipt)


@main.command("exit")
@_debt_option
@click.pass_obj
def exit_(state: CliState, debt):
    """Withdraw the whole position through an emergency exit."""
    receipt = _run(state, _act, state, ActionKind.EXIT, None, debt)
    if receipt is None:
        _fail("Exit cancelled")
    _receipt_line("exit", receipt)
    click.echo("  Local commitment record cleared")


@main.command()
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_obj
def export(state: CliState, out_path):
    """Export the commitment record as plaintext JSON (keep it secret)."""

    with _handle_errors(state):
        identity = build_context(state).require_identity()
        blob = build_store(state.settings).export(identity)
    if blob is None:
        _fail("No commitment record to export")
    if out_path:
        out_path.write_bytes(blob)
        click.echo(click.style(f"✓ Backup saved to: {out_path}", fg="green"))
    else:
        click.echo(blob.decode("utf-8"))


@main.command("import")
@click.argument("backup_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def import_(state: CliState, backup_file):
    """Restore a commitment record from an export."""

    with _handle_errors(state):
        identity = build_context(state).require_identity()
        record = build_store(state.settings).import_blob(identity, backup_file.read_bytes())
    click.echo(click.style(f"✓ Restored commitment {hex(record.commitment)}", fg="green"))


if __name__ == "__main__":
    main()
