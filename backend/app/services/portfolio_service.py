"""Per-user portfolio summaries and leaderboards derived from cached predictions and stakes.

Everything here is a pure fold over cache snapshots: nothing reads the ledger
and nothing writes the cache, so summaries can be produced on every request.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from app.core.config import get_settings
from app.domain import PredictionSnapshot, Side, StakeSnapshot, Token, ValidationError, normalize_address
from app.domain.models import utcnow
from app.services.cache_store import CacheStore
from app.services.payouts import compute_winner_payout_after_resolution


class PositionStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    CANCELLED = "cancelled"


def _settlement_payout(stake: StakeSnapshot, prediction: PredictionSnapshot, side: Side, fee_rate_bps: int) -> int:
    amount = stake.amount_on(side)
    if amount == 0:
        return 0
    pool = prediction.pool(stake.token)
    # Stake and pool entries can come from different reads, so never let the
    # side total trail the user's own stake.
    side_total = max(pool.side_total(side), amount)
    return compute_winner_payout_after_resolution(
        amount, side_total, pool.other_total(side), fee_rate_bps
    ).payout


@dataclass(slots=True)
class PredictionPosition:
    prediction: PredictionSnapshot
    stakes: dict[Token, StakeSnapshot] = field(default_factory=dict)

    @property
    def prediction_id(self) -> str:
        return self.prediction.prediction_id

    def staked_tokens(self) -> list[Token]:
        return [token for token in Token if token in self.stakes and self.stakes[token].total > 0]

    def won_in(self, token: Token) -> bool:
        side = self.prediction.winning_side
        stake = self.stakes.get(token)
        return side is not None and stake is not None and stake.amount_on(side) > 0

    def status(self, now: int | None = None) -> PositionStatus:
        now = int(utcnow().timestamp()) if now is None else now
        if self.prediction.is_cancelled:
            return PositionStatus.CANCELLED
        if self.prediction.is_resolved:
            won = any(self.won_in(token) for token in self.staked_tokens())
            return PositionStatus.WON if won else PositionStatus.LOST
        if self.prediction.is_active(now):
            return PositionStatus.ACTIVE
        return PositionStatus.PENDING

    def claimable(self, token: Token, fee_rate_bps: int) -> int:
        """Amount a claim transaction would pay for ``token`` right now."""

        stake = self.stakes.get(token)
        if stake is None or stake.claimed or stake.total == 0:
            return 0
        if self.prediction.is_cancelled:
            return stake.total
        side = self.prediction.winning_side
        if side is None:
            return 0
        return _settlement_payout(stake, self.prediction, side, fee_rate_bps)


@dataclass(slots=True)
class WinLossSummary:
    wins: int = 0
    losses: int = 0

    @property
    def settled(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> float:
        return self.wins / self.settled * 100 if self.settled else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"wins": self.wins, "losses": self.losses, "win_rate": self.win_rate}


@dataclass(slots=True)
class TokenTotals:
    token: Token
    staked: int = 0
    payout: int = 0
    open_staked: int = 0
    potential_payout: int = 0

    @property
    def profit(self) -> int:
        return self.payout - self.staked

    @property
    def roi(self) -> float:
        return self.profit / self.staked * 100 if self.staked else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token.value,
            "staked": self.staked,
            "payout": self.payout,
            "profit": self.profit,
            "roi": self.roi,
            "open_staked": self.open_staked,
            "potential_payout": self.potential_payout,
        }


def aggregate_wins_losses(positions: Iterable[PredictionPosition]) -> WinLossSummary:
    """Count settled predictions, treating a win in any token as a win.

    A user who lost their ETH stake but won their SWIPE stake on the same
    prediction scores one win. Open and cancelled predictions are not counted.
    """

    summary = WinLossSummary()
    for position in positions:
        if not position.prediction.is_resolved:
            continue
        tokens = position.staked_tokens()
        if not tokens:
            continue
        if any(position.won_in(token) for token in tokens):
            summary.wins += 1
        else:
            summary.losses += 1
    return summary


def aggregate_totals(
    positions: Iterable[PredictionPosition], token: Token, fee_rate_bps: int
) -> TokenTotals:
    totals = TokenTotals(token=token)
    for position in positions:
        stake = position.stakes.get(token)
        if stake is None or stake.total == 0:
            continue
        prediction = position.prediction

        if prediction.is_cancelled:
            totals.staked += stake.total
            totals.payout += stake.total
        elif prediction.is_resolved:
            totals.staked += stake.total
            side = prediction.winning_side
            if side is not None:
                totals.payout += _settlement_payout(stake, prediction, side, fee_rate_bps)
        else:
            totals.open_staked += stake.total
            totals.potential_payout += max(
                _settlement_payout(stake, prediction, side, fee_rate_bps) for side in Side
            )
    return totals


LEADERBOARD_SORTS = ("profit", "wins", "staked")


@dataclass(slots=True)
class LeaderboardEntry:
    user_address: str
    token: Token
    wins_losses: WinLossSummary
    totals: TokenTotals
    rank: int = 0

    @property
    def total_staked(self) -> int:
        return self.totals.staked + self.totals.open_staked

    def sort_value(self, sort_by: str) -> int:
        if sort_by == "wins":
            return self.wins_losses.wins
        if sort_by == "staked":
            return self.total_staked
        return self.totals.profit

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "user_address": self.user_address,
            "display_name": f"{self.user_address[:6]}...{self.user_address[-4:]}",
            "wins": self.wins_losses.wins,
            "losses": self.wins_losses.losses,
            "win_rate": self.wins_losses.win_rate,
            "staked": self.total_staked,
            "profit": self.totals.profit,
            "roi": self.totals.roi,
        }


def build_leaderboard(
    positions_by_user: Mapping[str, Iterable[PredictionPosition]],
    token: Token,
    fee_rate_bps: int,
    *,
    sort_by: str = "profit",
    limit: int | None = None,
) -> list[LeaderboardEntry]:
    """Rank users who staked ``token`` by settled profit, wins or total staked.

    Profit and staked amounts are per token; wins and losses use the same
    any-token-wins rule as the portfolio, restricted to predictions where the
    user staked ``token``. Ties rank by address so the order is stable.
    """

    if sort_by not in LEADERBOARD_SORTS:
        raise ValidationError(f"unknown leaderboard sort {sort_by!r}")
    entries: list[LeaderboardEntry] = []
    for user_address, positions in positions_by_user.items():
        staked_in_token = [position for position in positions if token in position.staked_tokens()]
        if not staked_in_token:
            continue
        entries.append(
            LeaderboardEntry(
                user_address=user_address,
                token=token,
                wins_losses=aggregate_wins_losses(staked_in_token),
                totals=aggregate_totals(staked_in_token, token, fee_rate_bps),
            )
        )
    entries.sort(key=lambda entry: (-entry.sort_value(sort_by), entry.user_address))
    if limit is not None:
        entries = entries[:limit]
    for rank, entry in enumerate(entries, start=1):
        entry.rank = rank
    return entries


@dataclass(slots=True)
class PortfolioSummary:
    user_address: str
    positions: list[PredictionPosition]
    wins_losses: WinLossSummary
    totals: dict[Token, TokenTotals]
    fee_rate_bps: int

    def to_dict(self, now: int | None = None) -> dict[str, Any]:
        return {
            "user_address": self.user_address,
            "positions": [
                {
                    "prediction_id": position.prediction_id,
                    "question": position.prediction.question,
                    "status": position.status(now).value,
                    "stakes": {
                        token.value: {
                            "yes_amount": stake.yes_amount,
                            "no_amount": stake.no_amount,
                            "vote": stake.vote.value,
                            "claimed": stake.claimed,
                        }
                        for token, stake in position.stakes.items()
                        if stake.total > 0
                    },
                    "claimable": {
                        token.value: position.claimable(token, self.fee_rate_bps) for token in Token
                    },
                }
                for position in self.positions
            ],
            "wins_losses": self.wins_losses.to_dict(),
            "totals": {token.value: totals.to_dict() for token, totals in self.totals.items()},
        }


class PortfolioAggregator:
    def __init__(self, cache: CacheStore, fee_rate_bps: int | None = None) -> None:
        self.cache = cache
        self.fee_rate_bps = get_settings().platform_fee_bps if fee_rate_bps is None else fee_rate_bps

    def positions(self, user_address: str) -> list[PredictionPosition]:
        positions: list[PredictionPosition] = []
        for stakes in self.cache.list_stakes_for_user(user_address):
            if not stakes:
                continue
            prediction_id = next(iter(stakes.values())).prediction_id
            prediction = self.cache.get_prediction(prediction_id)
            if prediction is None:
                logger.debug("No cached prediction {} for stakes of {}", prediction_id, user_address)
                continue
            positions.append(PredictionPosition(prediction=prediction, stakes=stakes))
        return positions

    def summarize(self, user_address: str) -> PortfolioSummary:
        user_address = normalize_address(user_address)
        positions = self.positions(user_address)
        return PortfolioSummary(
            user_address=user_address,
            positions=positions,
            wins_losses=aggregate_wins_losses(positions),
            totals={token: aggregate_totals(positions, token, self.fee_rate_bps) for token in Token},
            fee_rate_bps=self.fee_rate_bps,
        )

    def leaderboard(
        self, token: Token, *, sort_by: str = "profit", limit: int | None = None
    ) -> list[LeaderboardEntry]:
        predictions = {item.prediction_id: item for item in self.cache.list_predictions()}
        positions_by_user: dict[str, list[PredictionPosition]] = {}
        for stakes in self.cache.list_all_user_stakes():
            stake = next(iter(stakes.values()), None)
            if stake is None:
                continue
            prediction = predictions.get(stake.prediction_id)
            if prediction is None:
                continue
            positions_by_user.setdefault(stake.user_address, []).append(
                PredictionPosition(prediction=prediction, stakes=stakes)
            )
        return build_leaderboard(positions_by_user, token, self.fee_rate_bps, sort_by=sort_by, limit=limit)


__all__ = [
    "LEADERBOARD_SORTS",
    "LeaderboardEntry",
    "PortfolioAggregator",
    "PortfolioSummary",
    "PositionStatus",
    "PredictionPosition",
    "TokenTotals",
    "WinLossSummary",
    "aggregate_totals",
    "aggregate_wins_losses",
    "build_leaderboard",
]
