"""Typed domain representations shared by the ledger client, cache, and APIs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Token(str, Enum):
    ETH = "ETH"
    SWIPE = "SWIPE"


class Side(str, Enum):
    YES = "YES"
    NO = "NO"


class Vote(str, Enum):
    YES = "YES"
    NO = "NO"
    BOTH = "BOTH"
    NONE = "NONE"


class ResolutionStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class ApprovalStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class OperationKind(str, Enum):
    STAKE = "stake"
    RESOLVE = "resolve"
    CANCEL = "cancel"
    APPROVE = "approve"
    CLAIM = "claim"


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class SyncState(str, Enum):
    SUBMITTED = "submitted"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    SYNCING_TO_CACHE = "syncing_to_cache"
    SYNC_RETRY = "sync_retry"
    SYNC_OK = "sync_ok"
    SYNC_ABANDONED = "sync_abandoned"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(slots=True, frozen=True)
class PoolTotals:
    """Yes/no totals of one settlement-token pool, in the token's smallest unit."""

    yes_total: int = 0
    no_total: int = 0

    def __post_init__(self) -> None:
        if self.yes_total < 0 or self.no_total < 0:
            raise ValueError("pool totals must be non-negative")

    @property
    def total(self) -> int:
        return self.yes_total + self.no_total

    def side_total(self, side: Side) -> int:
        return self.yes_total if side is Side.YES else self.no_total

    def other_total(self, side: Side) -> int:
        return self.no_total if side is Side.YES else self.yes_total

    def to_dict(self) -> dict[str, int]:
        return {"yes_total": self.yes_total, "no_total": self.no_total}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PoolTotals:
        if not data:
            return cls()
        return cls(yes_total=int(data.get("yes_total", 0)), no_total=int(data.get("no_total", 0)))


@dataclass(slots=True)
class PredictionSnapshot:
    """Canonical prediction state as read from the ledger at ``observed_block``.

    The block height travels with the cache entry, not inside the cached value.
    """

    prediction_id: str
    question: str
    category: str
    creator: str
    deadline: int
    pools: dict[Token, PoolTotals] = field(default_factory=dict)
    resolution: ResolutionStatus = ResolutionStatus.OPEN
    outcome: bool | None = None
    cancel_reason: str | None = None
    approval: ApprovalStatus = ApprovalStatus.APPROVED
    participants: list[str] = field(default_factory=list)
    created_at: int = 0
    description: str | None = None
    observed_block: int = 0

    def pool(self, token: Token) -> PoolTotals:
        return self.pools.get(token, PoolTotals())

    def total_pool(self, token: Token) -> int:
        return self.pool(token).total

    @property
    def is_open(self) -> bool:
        return self.resolution is ResolutionStatus.OPEN

    @property
    def is_resolved(self) -> bool:
        return self.resolution is ResolutionStatus.RESOLVED

    @property
    def is_cancelled(self) -> bool:
        return self.resolution is ResolutionStatus.CANCELLED

    @property
    def winning_side(self) -> Side | None:
        if not self.is_resolved or self.outcome is None:
            return None
        return Side.YES if self.outcome else Side.NO

    def is_active(self, now: int) -> bool:
        return self.is_open and self.approval is ApprovalStatus.APPROVED and self.deadline > now

    def to_dict(self) -> dict[str, Any]:
        return {
            "prediction_id": self.prediction_id,
            "question": self.question,
            "description": self.description,
            "category": self.category,
            "creator": self.creator,
            "deadline": self.deadline,
            "created_at": self.created_at,
            "pools": {token.value: self.pool(token).to_dict() for token in Token},
            "resolution": self.resolution.value,
            "outcome": self.outcome,
            "cancel_reason": self.cancel_reason,
            "approval": self.approval.value,
            "participants": list(self.participants),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PredictionSnapshot:
        raw_pools = data.get("pools") or {}
        return cls(
            prediction_id=data["prediction_id"],
            question=data.get("question", ""),
            description=data.get("description"),
            category=data.get("category", ""),
            creator=data.get("creator", ""),
            deadline=int(data.get("deadline", 0)),
            created_at=int(data.get("created_at", 0)),
            pools={token: PoolTotals.from_dict(raw_pools.get(token.value)) for token in Token},
            resolution=ResolutionStatus(data.get("resolution", ResolutionStatus.OPEN.value)),
            outcome=data.get("outcome"),
            cancel_reason=data.get("cancel_reason"),
            approval=ApprovalStatus(data.get("approval", ApprovalStatus.APPROVED.value)),
            participants=list(data.get("participants") or []),
        )


@dataclass(slots=True)
class StakeSnapshot:
    """A user's accumulated stake in one token pool of one prediction."""

    prediction_id: str
    user_address: str
    token: Token
    yes_amount: int = 0
    no_amount: int = 0
    claimed: bool = False
    observed_block: int = 0

    @property
    def total(self) -> int:
        return self.yes_amount + self.no_amount

    @property
    def vote(self) -> Vote:
        if self.yes_amount > 0 and self.no_amount > 0:
            return Vote.BOTH
        if self.yes_amount > 0:
            return Vote.YES
        if self.no_amount > 0:
            return Vote.NO
        return Vote.NONE

    def amount_on(self, side: Side) -> int:
        return self.yes_amount if side is Side.YES else self.no_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "yes_amount": self.yes_amount,
            "no_amount": self.no_amount,
            "claimed": self.claimed,
        }

    @classmethod
    def from_dict(
        cls, prediction_id: str, user_address: str, token: Token, data: dict[str, Any] | None
    ) -> StakeSnapshot:
        data = data or {}
        return cls(
            prediction_id=prediction_id,
            user_address=user_address,
            token=token,
            yes_amount=int(data.get("yes_amount", 0)),
            no_amount=int(data.get("no_amount", 0)),
            claimed=bool(data.get("claimed", False)),
        )


@dataclass(slots=True)
class PendingSync:
    """In-memory record of a submitted transaction awaiting reconciliation."""

    transaction_id: str
    prediction_id: str
    user_address: str
    kind: OperationKind
    submitted_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    state: SyncState = SyncState.SUBMITTED
    token: Token | None = None
    amount: int | None = None


@dataclass(slots=True)
class UserTransaction:
    transaction_id: str
    kind: OperationKind
    prediction_id: str
    user_address: str
    status: TransactionStatus
    timestamp: datetime
    token: Token | None = None
    amount: int | None = None
    block_number: int | None = None
    explorer_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "kind": self.kind.value,
            "prediction_id": self.prediction_id,
            "user_address": self.user_address,
            "status": self.status.value,
            "timestamp": _as_utc(self.timestamp).isoformat(),
            "token": self.token.value if self.token else None,
            "amount": self.amount,
            "block_number": self.block_number,
            "explorer_url": self.explorer_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserTransaction:
        token = data.get("token")
        return cls(
            transaction_id=data["transaction_id"],
            kind=OperationKind(data["kind"]),
            prediction_id=data["prediction_id"],
            user_address=data["user_address"],
            status=TransactionStatus(data["status"]),
            timestamp=_as_utc(datetime.fromisoformat(data["timestamp"])),
            token=Token(token) if token else None,
            amount=data.get("amount"),
            block_number=data.get("block_number"),
            explorer_url=data.get("explorer_url"),
        )


@dataclass(slots=True)
class MarketStats:
    total_predictions: int = 0
    active_predictions: int = 0
    resolved_predictions: int = 0
    cancelled_predictions: int = 0
    total_participants: int = 0
    pool_totals: dict[Token, int] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_predictions": self.total_predictions,
            "active_predictions": self.active_predictions,
            "resolved_predictions": self.resolved_predictions,
            "cancelled_predictions": self.cancelled_predictions,
            "total_participants": self.total_participants,
            "pool_totals": {token.value: self.pool_totals.get(token, 0) for token in Token},
            "last_updated": _as_utc(self.last_updated).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MarketStats:
        raw_totals = data.get("pool_totals") or {}
        return cls(
            total_predictions=int(data.get("total_predictions", 0)),
            active_predictions=int(data.get("active_predictions", 0)),
            resolved_predictions=int(data.get("resolved_predictions", 0)),
            cancelled_predictions=int(data.get("cancelled_predictions", 0)),
            total_participants=int(data.get("total_participants", 0)),
            pool_totals={token: int(raw_totals.get(token.value, 0)) for token in Token},
            last_updated=_as_utc(datetime.fromisoformat(data["last_updated"])),
        )
