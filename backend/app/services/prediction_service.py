"""Read-only facade over cached predictions used by the API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from app import schemas
from app.core.config import get_settings
from app.domain import ApprovalStatus, PredictionSnapshot, Side, Token, ValidationError
from app.domain.models import utcnow
from app.services.cache_store import CacheStore
from app.services.payouts import (
    compute_confidence,
    compute_potential_payout,
    compute_risk_score,
    compute_share_of_pool,
)

STATUS_FILTERS = ("active", "open", "resolved", "cancelled", "pending_approval")


@dataclass(slots=True)
class PredictionQuery:
    status: str | None = None
    category: str | None = None
    limit: int = 50
    offset: int = 0


@dataclass(slots=True)
class PredictionQueryResult:
    total: int
    predictions: Sequence[schemas.Prediction]


def _matches_status(prediction: PredictionSnapshot, status: str | None, now: int) -> bool:
    if status is None:
        return True
    if status == "active":
        return prediction.is_active(now)
    if status == "pending_approval":
        return prediction.approval is ApprovalStatus.PENDING_APPROVAL
    return prediction.resolution.value == status


class PredictionService:
    def __init__(self, cache: CacheStore, fee_rate_bps: int | None = None) -> None:
        self.cache = cache
        self.fee_rate_bps = get_settings().platform_fee_bps if fee_rate_bps is None else fee_rate_bps

    def _token_pool(self, prediction: PredictionSnapshot, token: Token, now: int) -> schemas.TokenPool:
        pool = prediction.pool(token)
        confidence = compute_confidence(pool.yes_total, pool.no_total)
        risk = compute_risk_score(
            confidence,
            pool.total,
            len(prediction.participants),
            max(prediction.deadline - now, 0),
        )
        return schemas.TokenPool(
            token=token,
            yes_total=pool.yes_total,
            no_total=pool.no_total,
            total=pool.total,
            confidence=confidence,
            risk_score=risk.score,
            risk_tier=risk.tier.value,
            risk_components=risk.components,
        )

    def _to_schema(self, prediction: PredictionSnapshot, now: int) -> schemas.Prediction:
        return schemas.Prediction(
            prediction_id=prediction.prediction_id,
            question=prediction.question,
            description=prediction.description,
            category=prediction.category,
            creator=prediction.creator,
            deadline=prediction.deadline,
            created_at=prediction.created_at,
            resolution=prediction.resolution.value,
            outcome=prediction.outcome,
            cancel_reason=prediction.cancel_reason,
            approval=prediction.approval.value,
            participant_count=len(prediction.participants),
            pools=[self._token_pool(prediction, token, now) for token in Token],
        )

    def list_predictions(self, query: PredictionQuery) -> PredictionQueryResult:
        if query.status is not None and query.status not in STATUS_FILTERS:
            raise ValidationError(f"unknown status filter {query.status!r}")
        now = int(utcnow().timestamp())
        category = query.category.lower() if query.category else None
        matches = [
            prediction
            for prediction in self.cache.list_predictions()
            if _matches_status(prediction, query.status, now)
            and (category is None or prediction.category.lower() == category)
        ]
        matches.sort(key=lambda item: (item.deadline, item.prediction_id))
        page = matches[query.offset : query.offset + query.limit]
        return PredictionQueryResult(
            total=len(matches), predictions=[self._to_schema(item, now) for item in page]
        )

    def get_prediction(self, prediction_id: str) -> schemas.Prediction | None:
        prediction = self.cache.get_prediction(prediction_id)
        if prediction is None:
            return None
        return self._to_schema(prediction, int(utcnow().timestamp()))

    def list_stakes(self, prediction_id: str) -> schemas.StakeList | None:
        if self.cache.get_prediction(prediction_id) is None:
            return None
        items = [
            schemas.Stake(
                user_address=stake.user_address,
                token=stake.token,
                yes_amount=stake.yes_amount,
                no_amount=stake.no_amount,
                vote=stake.vote.value,
                claimed=stake.claimed,
            )
            for stakes in self.cache.list_stakes_for_prediction(prediction_id)
            for stake in stakes.values()
            if stake.total > 0
        ]
        return schemas.StakeList(prediction_id=prediction_id, items=items)

    def quote_stake(
        self, prediction_id: str, side: Side, token: Token, amount: int
    ) -> schemas.Quote | None:
        """Preview a stake against the cached pools before anything is submitted."""

        prediction = self.cache.get_prediction(prediction_id)
        if prediction is None:
            return None
        if not prediction.is_active(int(utcnow().timestamp())):
            raise ValidationError(f"prediction {prediction_id} is not accepting stakes")

        pool = prediction.pool(token)
        winning_before = pool.side_total(side)
        quote = compute_potential_payout(winning_before, pool.other_total(side), amount, self.fee_rate_bps)
        yes_after = pool.yes_total + (amount if side is Side.YES else 0)
        no_after = pool.no_total + (amount if side is Side.NO else 0)
        return schemas.Quote(
            prediction_id=prediction_id,
            side=side,
            token=token,
            amount=amount,
            payout=quote.payout,
            profit=quote.profit,
            fee_amount=quote.fee_amount,
            share_of_pool=compute_share_of_pool(amount, winning_before + amount),
            confidence_after=compute_confidence(yes_after, no_after),
        )


__all__ = ["PredictionQuery", "PredictionQueryResult", "PredictionService", "STATUS_FILTERS"]
