"""Domain models for predictions, stakes, and reconciliation bookkeeping."""

from .errors import (
    DriftError,
    LedgerConfirmationTimeout,
    LedgerReadError,
    LedgerSubmissionError,
    SubmissionAbandoned,
    SyncTransientError,
    ValidationError,
)
from .identifiers import format_prediction_id, normalize_address, parse_prediction_id
from .models import (
    ApprovalStatus,
    ConfirmationStatus,
    MarketStats,
    OperationKind,
    PendingSync,
    PoolTotals,
    PredictionSnapshot,
    ResolutionStatus,
    Side,
    StakeSnapshot,
    SyncState,
    Token,
    TransactionStatus,
    UserTransaction,
    Vote,
)

__all__ = [
    "ApprovalStatus",
    "ConfirmationStatus",
    "DriftError",
    "LedgerConfirmationTimeout",
    "LedgerReadError",
    "LedgerSubmissionError",
    "MarketStats",
    "OperationKind",
    "PendingSync",
    "PoolTotals",
    "PredictionSnapshot",
    "ResolutionStatus",
    "Side",
    "StakeSnapshot",
    "SubmissionAbandoned",
    "SyncState",
    "SyncTransientError",
    "Token",
    "TransactionStatus",
    "UserTransaction",
    "ValidationError",
    "Vote",
    "format_prediction_id",
    "normalize_address",
    "parse_prediction_id",
]
