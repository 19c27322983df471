"""Read-side cache of ledger state, keyed for the reconciliation engine and readers."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import session_scope
from app.domain import (
    MarketStats,
    PredictionSnapshot,
    StakeSnapshot,
    SyncTransientError,
    Token,
    UserTransaction,
    normalize_address,
)
from app.domain.models import utcnow
from app.repositories import CacheRepository


class CacheKeys:
    """Key scheme shared by the reconciliation engine and the aggregators."""

    PREDICTION_PREFIX = "prediction:"
    USER_STAKES_PREFIX = "user-stakes:"
    MARKET_STATS = "market:stats"

    @staticmethod
    def prediction(prediction_id: str) -> str:
        return f"prediction:{prediction_id}"

    @staticmethod
    def stakes_prefix(prediction_id: str) -> str:
        return f"stakes:{prediction_id}:"

    @staticmethod
    def stakes(prediction_id: str, user_address: str) -> str:
        return f"stakes:{prediction_id}:{normalize_address(user_address)}"

    @staticmethod
    def user_stakes_prefix(user_address: str) -> str:
        return f"user-stakes:{normalize_address(user_address)}:"

    @staticmethod
    def user_stakes(user_address: str, prediction_id: str) -> str:
        return f"user-stakes:{normalize_address(user_address)}:{prediction_id}"

    @staticmethod
    def user_transactions_prefix(user_address: str) -> str:
        return f"user-tx-history:{normalize_address(user_address)}:"

    @staticmethod
    def user_transaction(user_address: str, transaction_id: str) -> str:
        return f"user-tx-history:{normalize_address(user_address)}:{transaction_id}"


def _stake_value(prediction_id: str, user_address: str, stakes: dict[Token, StakeSnapshot]) -> dict[str, Any]:
    value: dict[str, Any] = {
        "prediction_id": prediction_id,
        "user_address": normalize_address(user_address),
    }
    for token in Token:
        stake = stakes.get(token)
        value[token.value] = stake.to_dict() if stake is not None else StakeSnapshot(
            prediction_id, user_address, token
        ).to_dict()
    return value


def _stakes_from_value(value: dict[str, Any]) -> dict[Token, StakeSnapshot]:
    prediction_id = value["prediction_id"]
    user_address = value["user_address"]
    return {
        token: StakeSnapshot.from_dict(prediction_id, user_address, token, value.get(token.value))
        for token in Token
    }


class CacheStore:
    """Thread-safe key/value store with last-read-wins overwrites.

    Engine flows call this from worker threads; the lock serializes the
    compare-and-replace inside one process and the row lock taken by the
    repository covers concurrent writers on PostgreSQL.
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Generic contract

    def put(
        self,
        key: str,
        value: dict[str, Any] | list[Any],
        *,
        observed_block: int = 0,
        observed_at: datetime | None = None,
    ) -> bool:
        observed_at = observed_at or utcnow()
        try:
            with self._lock, session_scope(self._session_factory) as session:
                written = CacheRepository(session).put(
                    key, value, observed_block=observed_block, observed_at=observed_at
                )
        except SQLAlchemyError as exc:
            raise SyncTransientError(f"cache write failed for {key}: {exc}") from exc
        if not written:
            logger.debug("Skipped stale cache write for {} (block {})", key, observed_block)
        return written

    def get(self, key: str) -> dict[str, Any] | list[Any] | None:
        try:
            with session_scope(self._session_factory) as session:
                return CacheRepository(session).get(key)
        except SQLAlchemyError as exc:
            raise SyncTransientError(f"cache read failed for {key}: {exc}") from exc

    def list_by_prefix(self, prefix: str) -> list[dict[str, Any] | list[Any]]:
        try:
            with session_scope(self._session_factory) as session:
                return CacheRepository(session).list_by_prefix(prefix)
        except SQLAlchemyError as exc:
            raise SyncTransientError(f"cache scan failed for {prefix}: {exc}") from exc

    # ------------------------------------------------------------------
    # Predictions

    def put_prediction(self, snapshot: PredictionSnapshot, *, observed_at: datetime | None = None) -> bool:
        return self.put(
            CacheKeys.prediction(snapshot.prediction_id),
            snapshot.to_dict(),
            observed_block=snapshot.observed_block,
            observed_at=observed_at,
        )

    def get_prediction(self, prediction_id: str) -> PredictionSnapshot | None:
        value = self.get(CacheKeys.prediction(prediction_id))
        return PredictionSnapshot.from_dict(value) if value else None

    def list_predictions(self) -> list[PredictionSnapshot]:
        return [
            PredictionSnapshot.from_dict(value)
            for value in self.list_by_prefix(CacheKeys.PREDICTION_PREFIX)
        ]

    # ------------------------------------------------------------------
    # Stakes

    def put_stakes(
        self,
        prediction_id: str,
        user_address: str,
        stakes: dict[Token, StakeSnapshot],
        *,
        observed_block: int | None = None,
        observed_at: datetime | None = None,
    ) -> bool:
        value = _stake_value(prediction_id, user_address, stakes)
        if observed_block is None:
            observed_block = max((stake.observed_block for stake in stakes.values()), default=0)
        observed_at = observed_at or utcnow()
        by_prediction = self.put(
            CacheKeys.stakes(prediction_id, user_address),
            value,
            observed_block=observed_block,
            observed_at=observed_at,
        )
        by_user = self.put(
            CacheKeys.user_stakes(user_address, prediction_id),
            value,
            observed_block=observed_block,
            observed_at=observed_at,
        )
        return by_prediction or by_user

    def get_stakes(self, prediction_id: str, user_address: str) -> dict[Token, StakeSnapshot] | None:
        value = self.get(CacheKeys.stakes(prediction_id, user_address))
        return _stakes_from_value(value) if value else None

    def list_stakes_for_prediction(self, prediction_id: str) -> list[dict[Token, StakeSnapshot]]:
        return [
            _stakes_from_value(value)
            for value in self.list_by_prefix(CacheKeys.stakes_prefix(prediction_id))
        ]

    def list_stakes_for_user(self, user_address: str) -> list[dict[Token, StakeSnapshot]]:
        return [
            _stakes_from_value(value)
            for value in self.list_by_prefix(CacheKeys.user_stakes_prefix(user_address))
        ]

    def list_all_user_stakes(self) -> list[dict[Token, StakeSnapshot]]:
        return [_stakes_from_value(value) for value in self.list_by_prefix(CacheKeys.USER_STAKES_PREFIX)]

    # ------------------------------------------------------------------
    # Transactions and stats

    def put_transaction(self, transaction: UserTransaction, *, observed_block: int = 0) -> bool:
        return self.put(
            CacheKeys.user_transaction(transaction.user_address, transaction.transaction_id),
            transaction.to_dict(),
            observed_block=observed_block,
            observed_at=transaction.timestamp,
        )

    def list_transactions(self, user_address: str) -> list[UserTransaction]:
        transactions = [
            UserTransaction.from_dict(value)
            for value in self.list_by_prefix(CacheKeys.user_transactions_prefix(user_address))
        ]
        return sorted(transactions, key=lambda item: item.timestamp, reverse=True)

    def put_market_stats(self, stats: MarketStats) -> bool:
        return self.put(CacheKeys.MARKET_STATS, stats.to_dict(), observed_at=stats.last_updated)

    def get_market_stats(self) -> MarketStats | None:
        value = self.get(CacheKeys.MARKET_STATS)
        return MarketStats.from_dict(value) if value else None


__all__ = ["CacheKeys", "CacheStore"]
