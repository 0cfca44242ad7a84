"""
Session context.

Built once per session and passed explicitly to every component that needs
the identity, the signing capability or the ledger endpoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from .exceptions import UserInputError, WalletUnavailable
from .fields import normalize_address


class Signer(Protocol):
    """Wallet capability: signs and broadcasts one contract call."""

    @property
    def address(self) -> str:
        ...

    async def invoke(
        self, contract_address: str, entrypoint: str, calldata: Sequence[str]
    ) -> str:
        """Return the transaction hash."""
        ...


@dataclass(frozen=True)
class SessionContext:
    """
    Attributes:
        identity: Account address the session acts for (None = not connected)
        rpc_url: Ledger JSON-RPC endpoint
        vault_address: Lending vault contract address
        signer: Wallet capability; required only for state-changing calls
    """

    identity: Optional[str]
    rpc_url: str
    vault_address: str
    signer: Optional[Signer] = None

    def require_identity(self) -> str:
        if not self.identity:
            raise WalletUnavailable("no wallet identity connected")
        try:
            return normalize_address(self.identity)
        except UserInputError as exc:
            raise WalletUnavailable(f"invalid wallet identity: {self.identity!r}") from exc

    def require_signer(self) -> Signer:
        identity = self.require_identity()
        if self.signer is None:
            raise WalletUnavailable("no signing capability connected")
        if normalize_address(self.signer.address) != identity:
            raise WalletUnavailable("signer does not control the session identity")
        return self.signer
