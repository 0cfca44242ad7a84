"""Signer that delegates to an external wallet command."""

from __future__ import annotations

import logging
import re
import shlex
import shutil
from typing import List, Sequence, Union

import trio

from .exceptions import WalletUnavailable
from .fields import normalize_address

logger = logging.getLogger(__name__)

DEFAULT_SIGNER_COMMAND = (
    "sncast invoke --contract-address {contract} --function {entrypoint} --calldata {calldata}"
)

_TX_HASH_LABELLED = re.compile(r"transaction[_ ]hash\W*(0x[0-9a-fA-F]+)", re.IGNORECASE)
_TX_HASH_BARE = re.compile(r"^\s*(0x[0-9a-fA-F]+)\s*$")


def parse_tx_hash(output: str) -> str:
    """
    Example:
        >>> parse_tx_hash("command: invoke\\ntransaction_hash: 0x5a1")
        '0x5a1'
    """
    match = _TX_HASH_LABELLED.search(output) or _TX_HASH_BARE.match(output)
    if match is None:
        raise WalletUnavailable("wallet command did not report a transaction hash")
    return match.group(1).lower()


class CommandSigner:
    """
    Sign and broadcast through a wallet CLI.

    The template's {contract} and {entrypoint} placeholders are replaced in
    place; a standalone {calldata} token expands to one argument per value.
    """

    def __init__(self, address: str, command: Union[str, Sequence[str], None] = None) -> None:
        self._address = normalize_address(address)
        if command is None:
            command = DEFAULT_SIGNER_COMMAND
        self._command: List[str] = (
            shlex.split(command) if isinstance(command, str) else list(command)
        )
        if not self._command or "{calldata}" not in self._command:
            raise ValueError("signer command must contain a standalone {calldata} token")

    @property
    def address(self) -> str:
        return self._address

    def is_available(self) -> bool:
        return shutil.which(self._command[0]) is not None

    def render(
        self, contract_address: str, entrypoint: str, calldata: Sequence[str]
    ) -> List[str]:
        rendered: List[str] = []
        for part in self._command:
            if part == "{calldata}":
                rendered.extend(str(value) for value in calldata)
                continue
            rendered.append(
                part.replace("{contract}", contract_address).replace("{entrypoint}", entrypoint)
            )
        return rendered

    async def invoke(
        self, contract_address: str, entrypoint: str, calldata: Sequence[str]
    ) -> str:
        if not self.is_available():
            raise WalletUnavailable(f"wallet command not found: {self._command[0]}")
        command = self.render(contract_address, entrypoint, calldata)
        logger.debug("invoking %s through %s", entrypoint, command[0])
        try:
            result = await trio.run_process(
                command, capture_stdout=True, capture_stderr=True, check=False
            )
        except OSError as exc:
            raise WalletUnavailable(f"failed to start wallet command: {exc}") from exc

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", "replace").strip()
            raise WalletUnavailable(f"wallet command failed: {stderr or 'unknown error'}")
        return parse_tx_hash(result.stdout.decode("utf-8", "replace"))
