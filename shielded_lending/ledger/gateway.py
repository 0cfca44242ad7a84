"""
Ledger gateway.

LedgerGateway is the contract surface the engine depends on.
JsonRpcLedgerGateway reaches a Starknet node over JSON-RPC with httpx:
views go through starknet_call, state-changing calls are signed and sent by
the session's Signer and then followed until a receipt is final.
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx
import trio
from Crypto.Hash import keccak

from ..protocol.config import (
    RECEIPT_POLL_INTERVAL_SEC,
    RPC_TIMEOUT_SEC,
    SUBMISSION_TIMEOUT_SEC,
)
from ..protocol.context import SessionContext
from ..protocol.exceptions import (
    LedgerGatewayError,
    LedgerSubmissionError,
    LendingProtocolError,
)
from ..protocol.types import AggregateHealth, DepositResult, TxOutcome, TxReceipt
from .calldata import join_u256, split_u256

logger = logging.getLogger(__name__)

_SELECTOR_MASK = (1 << 250) - 1
_TX_HASH_NOT_FOUND = 29


def get_selector(name: str) -> int:
    """starknet_keccak of an entry point or event name."""
    digest = keccak.new(digest_bits=256, data=name.encode("ascii")).digest()
    return int.from_bytes(digest, "big") & _SELECTOR_MASK


class LedgerGateway(ABC):
    """Remote ledger: pool views and the state-changing entry points."""

    @abstractmethod
    async def get_merkle_root(self) -> int:
        ...

    @abstractmethod
    async def get_commitment_count(self) -> int:
        ...

    @abstractmethod
    async def is_nullifier_used(self, nullifier: int) -> bool:
        ...

    @abstractmethod
    async def get_aggregate_health(self) -> AggregateHealth:
        ...

    @abstractmethod
    async def deposit(self, amount: int) -> DepositResult:
        ...

    @abstractmethod
    async def invoke(self, entrypoint: str, calldata: Sequence[str]) -> TxReceipt:
        """
        Send one signed call and wait for its outcome.

        Raises:
            WalletUnavailable: No signer in the session
            LedgerSubmissionError: The wallet rejected the call
            LedgerGatewayError: The node could not be reached
        """


class JsonRpcLedgerGateway(LedgerGateway):
    """
    Example:
        async with JsonRpcLedgerGateway(context) as gateway:
            root = await gateway.get_merkle_root()
    """

    def __init__(
        self,
        context: SessionContext,
        client: Optional[httpx.AsyncClient] = None,
        *,
        submission_timeout: float = SUBMISSION_TIMEOUT_SEC,
        poll_interval: float = RECEIPT_POLL_INTERVAL_SEC,
    ) -> None:
        self._context = context
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=RPC_TIMEOUT_SEC)
        self._submission_timeout = submission_timeout
        self._poll_interval = poll_interval
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "JsonRpcLedgerGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # JSON-RPC plumbing
    # ------------------------------------------------------------------

    async def _rpc(self, method: str, params: Dict[str, Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(self._context.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise LedgerGatewayError(f"{method} failed: {exc}") from exc
        except ValueError as exc:
            raise LedgerGatewayError(f"{method} returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise LedgerGatewayError(f"{method} returned a malformed response")
        if body.get("error"):
            error = body["error"]
            raise LedgerGatewayError(
                f"{method} error {error.get('code')}: {error.get('message')}"
            )
        return body.get("result")

    async def _call(self, function: str, calldata: Sequence[int] = ()) -> List[int]:
        result = await self._rpc(
            "starknet_call",
            {
                "request": {
                    "contract_address": self._context.vault_address,
                    "entry_point_selector": hex(get_selector(function)),
                    "calldata": [hex(value) for value in calldata],
                },
                "block_id": "latest",
            },
        )
        if not isinstance(result, list):
            raise LedgerGatewayError(f"{function} returned a malformed result")
        try:
            return [int(value, 16) for value in result]
        except (TypeError, ValueError) as exc:
            raise LedgerGatewayError(f"{function} returned non-felt values") from exc

    @staticmethod
    def _expect(values: List[int], count: int, function: str) -> List[int]:
        if len(values) < count:
            raise LedgerGatewayError(f"{function} returned {len(values)} values, expected {count}")
        return values

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def get_merkle_root(self) -> int:
        return self._expect(await self._call("get_merkle_root"), 1, "get_merkle_root")[0]

    async def get_commitment_count(self) -> int:
        return self._expect(
            await self._call("get_commitment_count"), 1, "get_commitment_count"
        )[0]

    async def is_nullifier_used(self, nullifier: int) -> bool:
        values = self._expect(
            await self._call("is_nullifier_used", [nullifier]), 1, "is_nullifier_used"
        )
        return values[0] != 0

    async def get_aggregate_health(self) -> AggregateHealth:
        values = self._expect(
            await self._call("get_aggregate_health_factor"), 6, "get_aggregate_health_factor"
        )
        return AggregateHealth(
            collateral_usd=join_u256(values[0], values[1]),
            debt_usd=join_u256(values[2], values[3]),
            health_factor=join_u256(values[4], values[5]),
        )

    # ------------------------------------------------------------------
    # State-changing calls
    # ------------------------------------------------------------------

    async def deposit(self, amount: int) -> DepositResult:
        low, high = split_u256(amount)
        receipt, events = await self._invoke("deposit", [str(low), str(high)])
        commitment = None
        deposited = get_selector("Deposited")
        for event in events:
            keys = event.get("keys") or []
            data = event.get("data") or []
            if keys and int(keys[0], 16) == deposited and data:
                commitment = int(data[-1], 16)
                break
        return DepositResult(receipt=receipt, commitment=commitment)

    async def invoke(self, entrypoint: str, calldata: Sequence[str]) -> TxReceipt:
        receipt, _ = await self._invoke(entrypoint, calldata)
        return receipt

    async def _invoke(self, entrypoint: str, calldata: Sequence[str]) -> tuple:
        signer = self._context.require_signer()
        try:
            tx_hash = await signer.invoke(self._context.vault_address, entrypoint, list(calldata))
        except LendingProtocolError:
            raise
        except Exception as exc:
            raise LedgerSubmissionError(f"{entrypoint} rejected by wallet: {exc}") from exc
        logger.info("%s submitted as %s", entrypoint, tx_hash)
        return await self._wait_for_receipt(tx_hash)

    async def _wait_for_receipt(self, tx_hash: str) -> tuple:
        with trio.move_on_after(self._submission_timeout):
            while True:
                try:
                    result = await self._rpc(
                        "starknet_getTransactionReceipt", {"transaction_hash": tx_hash}
                    )
                except LedgerGatewayError as exc:
                    if f"error {_TX_HASH_NOT_FOUND}:" not in str(exc):
                        raise
                    result = None

                if isinstance(result, dict):
                    status = result.get("execution_status")
                    if status == "SUCCEEDED":
                        return TxReceipt(tx_hash, TxOutcome.ACCEPTED), result.get("events", [])
                    if status == "REVERTED":
                        return (
                            TxReceipt(tx_hash, TxOutcome.REVERTED, result.get("revert_reason")),
                            [],
                        )
                await trio.sleep(self._poll_interval)

        logger.warning("no receipt for %s within %.0fs", tx_hash, self._submission_timeout)
        return TxReceipt(tx_hash, TxOutcome.TIMED_OUT), []
