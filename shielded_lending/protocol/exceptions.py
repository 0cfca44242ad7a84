"""
Custom exceptions for the shielded lending protocol.

Local validation errors (UserInputError, WalletUnavailable,
InsufficientHealthError, NoCommitmentError) are raised before any remote
call. Remote failures are reported once and never retried here.
"""

from __future__ import annotations


class LendingProtocolError(Exception):
    """Base exception for shielded lending errors."""

    pass


class ConfigurationError(LendingProtocolError):
    """Configuration error."""

    pass


class UserInputError(LendingProtocolError):
    """Missing or invalid amount fields."""

    pass


class WalletUnavailable(LendingProtocolError):
    """No signing identity connected."""

    pass


class InsufficientHealthError(LendingProtocolError):
    """Local health factor check failed its threshold."""

    def __init__(self, ratio, min_ratio) -> None:
        self.ratio = ratio
        self.min_ratio = min_ratio
        super().__init__(
            f"health factor {float(ratio):.4f} below minimum {float(min_ratio):.4f}"
        )


class StaleRootError(LendingProtocolError):
    """Cached Merkle path was built for a root that is no longer live."""

    def __init__(self, cached_root: int, live_root: int) -> None:
        self.cached_root = cached_root
        self.live_root = live_root
        super().__init__(
            f"cached merkle root {hex(cached_root)} does not match "
            f"live root {hex(live_root)}"
        )


class CommitmentMismatchError(LendingProtocolError):
    """
    Ledger recorded a different commitment than the one computed locally.

    Raised after a confirmed deposit; the local record (with its salt) has
    already been saved and is available as `record`.
    """

    def __init__(self, record, reported: int) -> None:
        self.record = record
        self.reported = reported
        super().__init__(
            f"ledger recorded commitment {hex(reported)} but the local commitment "
            f"is {hex(record.commitment)}; the saved record cannot prove membership"
        )


class NoCommitmentError(LendingProtocolError):
    """No stored commitment record for the identity."""

    pass


class StoreError(LendingProtocolError):
    """Commitment store could not be read or written."""

    pass


class ProofBackendUnavailable(LendingProtocolError):
    """Proof backend failed or is not installed."""

    pass


class ProofTimeoutError(ProofBackendUnavailable):
    """Proof generation exceeded its time budget."""

    pass


class ProofBindingError(LendingProtocolError):
    """Proof artifact and public inputs do not belong together."""

    pass


class InvalidTransitionError(LendingProtocolError):
    """Action flow was asked to make a transition it does not allow."""

    pass


class LedgerGatewayError(LendingProtocolError):
    """Ledger gateway could not be reached or answered malformed data."""

    pass


class LedgerSubmissionError(LendingProtocolError):
    """Transaction reverted, was rejected, or timed out."""

    def __init__(self, message: str, receipt=None) -> None:
        self.receipt = receipt
        super().__init__(message)


class NullifierUsedError(LedgerSubmissionError):
    """Ledger already recorded the nullifier for this action."""

    pass


class ConcurrentSubmissionError(LedgerSubmissionError):
    """A submission is already in flight for this action."""

    pass
