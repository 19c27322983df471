"""Parimutuel payout math for the ETH and SWIPE pools.

All amounts are integers in the token's smallest unit and every division
floors, matching the ledger's settlement arithmetic so that a displayed
claimable amount equals what a claim transaction pays out. The platform fee is
charged on the losing pool only.

Risk score contract (user-visible labels depend on these values):

==========================  ======  ==============================================
Sub-score                   Max     Formula (clipped to [0, max])
==========================  ======  ==============================================
confidence skew             40      40 * (1 - |confidence - 50| / 50)
liquidity                   25      25 * (1 - total_staked / LIQUIDITY_REFERENCE)
participation               20      20 * (1 - participants / PARTICIPATION_REFERENCE)
time to deadline            15      15 * min(1, seconds / TIME_REFERENCE_SECONDS)
==========================  ======  ==============================================

The sum is clipped to [0, 100]. Tiers: below 30 is LOW, 30 to 59 is MEDIUM,
60 and above is HIGH.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from app.domain.errors import ValidationError

BPS_DENOMINATOR = 10_000

CONFIDENCE_SKEW_MAX = 40.0
LIQUIDITY_MAX = 25.0
PARTICIPATION_MAX = 20.0
TIME_MAX = 15.0

LIQUIDITY_REFERENCE = 10**18
PARTICIPATION_REFERENCE = 10
TIME_REFERENCE_SECONDS = 7 * 24 * 60 * 60

LOW_RISK_BELOW = 30.0
HIGH_RISK_FROM = 60.0


class RiskTier(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(slots=True, frozen=True)
class PayoutQuote:
    payout: int
    profit: int
    fee_amount: int


@dataclass(slots=True, frozen=True)
class RiskAssessment:
    score: float
    tier: RiskTier
    components: dict[str, float] = field(default_factory=dict)


def _require_amount(name: str, value: object, *, positive: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer amount, got {value!r}")
    if value < 0:
        raise ValidationError(f"{name} must be non-negative, got {value}")
    if positive and value == 0:
        raise ValidationError(f"{name} must be greater than zero")
    return value


def _require_fee_rate(fee_rate_bps: object) -> int:
    if isinstance(fee_rate_bps, bool) or not isinstance(fee_rate_bps, int):
        raise ValidationError(f"fee_rate_bps must be an integer, got {fee_rate_bps!r}")
    if not 0 <= fee_rate_bps < BPS_DENOMINATOR:
        raise ValidationError(f"fee_rate_bps must be in [0, {BPS_DENOMINATOR}), got {fee_rate_bps}")
    return fee_rate_bps


def compute_platform_fee(losing_pool: int, fee_rate_bps: int) -> int:
    losing_pool = _require_amount("losing_pool", losing_pool)
    fee_rate_bps = _require_fee_rate(fee_rate_bps)
    return losing_pool * fee_rate_bps // BPS_DENOMINATOR


def _share_of_distributable(stake: int, winning_total: int, losing_pool: int, fee: int) -> int:
    if winning_total == 0:
        return 0
    return stake * (losing_pool - fee) // winning_total


def compute_potential_payout(
    winning_pool_before: int,
    losing_pool_before: int,
    stake_amount: int,
    fee_rate_bps: int,
) -> PayoutQuote:
    """Preview what ``stake_amount`` would pay if its side wins, pools as they stand."""

    winning_pool_before = _require_amount("winning_pool_before", winning_pool_before)
    losing_pool_before = _require_amount("losing_pool_before", losing_pool_before)
    stake_amount = _require_amount("stake_amount", stake_amount, positive=True)
    fee = compute_platform_fee(losing_pool_before, fee_rate_bps)

    reward = _share_of_distributable(
        stake_amount, winning_pool_before + stake_amount, losing_pool_before, fee
    )
    payout = stake_amount + reward
    return PayoutQuote(payout=payout, profit=payout - stake_amount, fee_amount=fee)


def compute_winner_payout_after_resolution(
    stake_amount: int,
    user_side_total: int,
    other_side_total: int,
    fee_rate_bps: int,
) -> PayoutQuote:
    """Amount a winning stake can claim once the prediction is resolved."""

    stake_amount = _require_amount("stake_amount", stake_amount)
    user_side_total = _require_amount("user_side_total", user_side_total)
    other_side_total = _require_amount("other_side_total", other_side_total)
    if stake_amount > user_side_total:
        raise ValidationError(
            f"stake_amount {stake_amount} exceeds the winning side total {user_side_total}"
        )
    fee = compute_platform_fee(other_side_total, fee_rate_bps)
    if stake_amount == 0:
        return PayoutQuote(payout=0, profit=0, fee_amount=fee)

    payout = stake_amount + _share_of_distributable(stake_amount, user_side_total, other_side_total, fee)
    return PayoutQuote(payout=payout, profit=payout - stake_amount, fee_amount=fee)


def compute_share_of_pool(stake_amount: int, winning_pool_after: int) -> float:
    stake_amount = _require_amount("stake_amount", stake_amount)
    winning_pool_after = _require_amount("winning_pool_after", winning_pool_after)
    if winning_pool_after == 0:
        return 0.0
    return stake_amount / winning_pool_after


def compute_confidence(yes_total: int, no_total: int) -> float:
    """Percentage of the pool backing YES; 50 for an empty pool."""

    yes_total = _require_amount("yes_total", yes_total)
    no_total = _require_amount("no_total", no_total)
    total = yes_total + no_total
    if total == 0:
        return 50.0
    return yes_total / total * 100


def _clip(value: float, upper: float) -> float:
    return max(0.0, min(upper, value))


def risk_tier(score: float) -> RiskTier:
    if score < LOW_RISK_BELOW:
        return RiskTier.LOW
    if score < HIGH_RISK_FROM:
        return RiskTier.MEDIUM
    return RiskTier.HIGH


def compute_risk_score(
    confidence: float,
    total_staked_both_sides: int,
    participant_count: int,
    seconds_to_deadline: int,
) -> RiskAssessment:
    if not 0 <= confidence <= 100:
        raise ValidationError(f"confidence must be within [0, 100], got {confidence}")
    total_staked_both_sides = _require_amount("total_staked_both_sides", total_staked_both_sides)
    participant_count = _require_amount("participant_count", participant_count)
    if isinstance(seconds_to_deadline, bool) or not isinstance(seconds_to_deadline, int):
        raise ValidationError(f"seconds_to_deadline must be an integer, got {seconds_to_deadline!r}")

    components = {
        "confidence_skew": _clip(
            CONFIDENCE_SKEW_MAX * (1 - abs(confidence - 50) / 50), CONFIDENCE_SKEW_MAX
        ),
        "liquidity": _clip(
            LIQUIDITY_MAX * (1 - total_staked_both_sides / LIQUIDITY_REFERENCE), LIQUIDITY_MAX
        ),
        "participation": _clip(
            PARTICIPATION_MAX * (1 - participant_count / PARTICIPATION_REFERENCE), PARTICIPATION_MAX
        ),
        # An expired market carries no remaining time risk.
        "time": _clip(TIME_MAX * min(1.0, seconds_to_deadline / TIME_REFERENCE_SECONDS), TIME_MAX),
    }
    score = round(_clip(sum(components.values()), 100.0), 2)
    return RiskAssessment(score=score, tier=risk_tier(score), components=components)


__all__ = [
    "BPS_DENOMINATOR",
    "PayoutQuote",
    "RiskAssessment",
    "RiskTier",
    "compute_confidence",
    "compute_platform_fee",
    "compute_potential_payout",
    "compute_risk_score",
    "compute_share_of_pool",
    "compute_winner_payout_after_resolution",
    "risk_tier",
]
