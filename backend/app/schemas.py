from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from app.domain import OperationKind, Side, Token


class TokenPool(BaseModel):
    token: Token
    yes_total: int
    no_total: int
    total: int
    confidence: float
    risk_score: float
    risk_tier: str
    risk_components: dict[str, float] = Field(default_factory=dict)


class Prediction(BaseModel):
    prediction_id: str
    question: str
    description: str | None = None
    category: str
    creator: str
    deadline: int
    created_at: int
    resolution: str
    outcome: bool | None = None
    cancel_reason: str | None = None
    approval: str
    participant_count: int
    pools: list[TokenPool] = Field(default_factory=list)


class PredictionList(BaseModel):
    total: int
    items: list[Prediction]


class Stake(BaseModel):
    user_address: str
    token: Token
    yes_amount: int
    no_amount: int
    vote: str
    claimed: bool


class StakeList(BaseModel):
    prediction_id: str
    items: list[Stake]


class QuoteRequest(BaseModel):
    side: Side
    token: Token
    amount: int = Field(gt=0, description="Stake in the token's smallest unit")

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Any:
        # Wei-sized amounts usually arrive as strings to survive JSON clients.
        if isinstance(value, str) and value.strip().isdigit():
            return int(value)
        return value


class Quote(BaseModel):
    prediction_id: str
    side: Side
    token: Token
    amount: int
    payout: int
    profit: int
    fee_amount: int
    share_of_pool: float
    confidence_after: float


class PositionStake(BaseModel):
    yes_amount: int
    no_amount: int
    vote: str
    claimed: bool


class Position(BaseModel):
    prediction_id: str
    question: str
    status: str
    stakes: dict[str, PositionStake] = Field(default_factory=dict)
    claimable: dict[str, int] = Field(default_factory=dict)


class WinLoss(BaseModel):
    wins: int
    losses: int
    win_rate: float


class TokenTotals(BaseModel):
    token: Token
    staked: int
    payout: int
    profit: int
    roi: float
    open_staked: int
    potential_payout: int


class Portfolio(BaseModel):
    user_address: str
    positions: list[Position]
    wins_losses: WinLoss
    totals: dict[str, TokenTotals]


class LeaderboardEntry(BaseModel):
    rank: int
    user_address: str
    display_name: str
    wins: int
    losses: int
    win_rate: float
    staked: int
    profit: int
    roi: float


class Leaderboard(BaseModel):
    token: Token
    sort: str
    total: int
    items: list[LeaderboardEntry]


class UserTransaction(BaseModel):
    transaction_id: str
    kind: OperationKind
    prediction_id: str
    user_address: str
    status: str
    timestamp: datetime
    token: Token | None = None
    amount: int | None = None
    block_number: int | None = None
    explorer_url: str | None = None


class TransactionList(BaseModel):
    user_address: str
    total: int
    items: list[UserTransaction]


class MarketStats(BaseModel):
    total_predictions: int
    active_predictions: int
    resolved_predictions: int
    cancelled_predictions: int
    total_participants: int
    pool_totals: dict[str, int]
    last_updated: datetime


class ReconcileRequest(BaseModel):
    prediction_id: str
    user_address: str
    transaction_id: str = Field(min_length=1)
    kind: OperationKind = OperationKind.STAKE


class ReconcileResponse(BaseModel):
    transaction_id: str
    prediction_id: str
    status: str
    state: str
    attempts: int
    message: str | None = None


class ResyncResponse(BaseModel):
    started_at: datetime
    finished_at: datetime | None = None
    predictions_seen: int
    predictions_synced: int
    stakes_synced: int
    drift_repaired: int
    failures: list[str] = Field(default_factory=list)
    market_stats: MarketStats | None = None


class VerifyResponse(BaseModel):
    prediction_id: str
    status: str
