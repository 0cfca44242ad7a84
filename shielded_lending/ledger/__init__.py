"""Ledger gateway, calldata encoding and action submission."""

from .calldata import ENTRYPOINTS, encode_action, encode_borrow, encode_exit, split_u256
from .gateway import JsonRpcLedgerGateway, LedgerGateway, get_selector
from .submitter import ActionSubmitter

__all__ = [
    "ENTRYPOINTS",
    "encode_action",
    "encode_borrow",
    "encode_exit",
    "split_u256",
    "LedgerGateway",
    "JsonRpcLedgerGateway",
    "get_selector",
    "ActionSubmitter",
]
