"""Error taxonomy for payout math, ledger writes, and cache reconciliation."""

from __future__ import annotations


class ValidationError(ValueError):
    """Malformed numeric input to the payout calculator; never retried."""


class LedgerSubmissionError(Exception):
    """The ledger rejected or reverted a write. Terminal; never retried automatically."""

    def __init__(self, message: str, *, transaction_id: str | None = None) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id


class SubmissionAbandoned(LedgerSubmissionError):
    """No transaction identifier was obtained (unsigned or timed out); nothing to reconcile."""


class LedgerConfirmationTimeout(Exception):
    """The ledger did not confirm within the bounded wait; status is unknown, not failed."""

    def __init__(self, transaction_id: str, waited_seconds: float) -> None:
        super().__init__(
            f"transaction {transaction_id} not confirmed after {waited_seconds:.0f}s; check status later"
        )
        self.transaction_id = transaction_id
        self.waited_seconds = waited_seconds


class LedgerReadError(Exception):
    """A read against the ledger gateway failed."""


class SyncTransientError(Exception):
    """A post-confirmation cache read/write or ledger re-read failed; safe to retry."""


class DriftError(Exception):
    """Cached projection disagrees with canonical ledger state."""

    def __init__(self, key: str, cached: object, canonical: object) -> None:
        super().__init__(f"cache entry {key} drifted from ledger state")
        self.key = key
        self.cached = cached
        self.canonical = canonical
