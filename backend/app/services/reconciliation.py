"""Keep the read-side cache convergent with the ledger.

Every submitted operation moves through::

    submitted -> awaiting_confirmation -> {confirmed, failed, confirmation_timeout}
    confirmed -> syncing_to_cache -> {sync_ok, sync_retry, sync_abandoned}

Cache writes are whole-value overwrites taken from one canonical ledger read,
so any number of attempts, duplicate deliveries or racing resyncs converge on
the most recent read. A periodic full resync repairs anything an abandoned
sync left behind.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Protocol

from loguru import logger

from app.core.config import Settings, get_settings
from app.domain import (
    ConfirmationStatus,
    DriftError,
    LedgerConfirmationTimeout,
    LedgerReadError,
    MarketStats,
    OperationKind,
    PendingSync,
    PredictionSnapshot,
    Side,
    StakeSnapshot,
    SyncState,
    SyncTransientError,
    Token,
    TransactionStatus,
    UserTransaction,
    ValidationError,
    normalize_address,
)
from app.domain.models import utcnow
from app.services.cache_store import CacheKeys, CacheStore
from app.services.notifications import LogNotifier, Notifier


class Ledger(Protocol):
    async def submit_stake(
        self, prediction_id: str, user_address: str, side: Side, token: Token, amount: int
    ) -> str: ...

    async def submit_resolve(self, prediction_id: str, outcome: bool, user_address: str) -> str: ...

    async def submit_cancel(self, prediction_id: str, reason: str, user_address: str) -> str: ...

    async def submit_approve(self, prediction_id: str, user_address: str) -> str: ...

    async def submit_claim(self, prediction_id: str, token: Token, user_address: str) -> str: ...

    async def wait_for_confirmation(
        self, transaction_id: str, *, timeout: float | None = None
    ) -> ConfirmationStatus: ...

    async def read_prediction(self, prediction_id: str) -> PredictionSnapshot: ...

    async def read_stake(self, prediction_id: str, user_address: str) -> dict[Token, StakeSnapshot]: ...

    async def list_active_prediction_ids(self) -> list[str]: ...


_RETRYABLE = (LedgerReadError, SyncTransientError)
_STAKE_AFFECTING = {OperationKind.STAKE, OperationKind.CLAIM}
# Outcomes that a repeated delivery may join; anything else is re-run on the next trigger.
_FINAL_STATES = {SyncState.SYNC_OK, SyncState.FAILED}


@dataclass(slots=True)
class ReconcileResult:
    transaction_id: str
    prediction_id: str
    state: SyncState
    attempts: int = 0
    message: str | None = None

    @property
    def status(self) -> str:
        if self.state is SyncState.SYNC_OK:
            return "success"
        if self.state is SyncState.FAILED:
            return "failed"
        if self.state is SyncState.CONFIRMATION_TIMEOUT:
            return "unknown"
        return "degraded"

    @property
    def degraded(self) -> bool:
        return self.state is SyncState.SYNC_ABANDONED


@dataclass(slots=True)
class ResyncSummary:
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    predictions_seen: int = 0
    predictions_synced: int = 0
    stakes_synced: int = 0
    drift_repaired: int = 0
    failures: list[str] = field(default_factory=list)
    market_stats: MarketStats | None = None

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "predictions_seen": self.predictions_seen,
            "predictions_synced": self.predictions_synced,
            "stakes_synced": self.stakes_synced,
            "drift_repaired": self.drift_repaired,
            "failures": list(self.failures),
            "market_stats": self.market_stats.to_dict() if self.market_stats else None,
        }


@dataclass(slots=True)
class _PredictionResync:
    prediction_id: str
    synced: bool = False
    stakes_synced: int = 0
    drift_repaired: int = 0
    error: str | None = None


def _stake_values(stakes: dict[Token, StakeSnapshot] | None) -> dict[str, Any] | None:
    if stakes is None:
        return None
    return {token.value: stakes[token].to_dict() for token in Token if token in stakes}


def compute_market_stats(predictions: list[PredictionSnapshot], *, now: datetime | None = None) -> MarketStats:
    now = now or utcnow()
    timestamp = int(now.timestamp())
    participants: set[str] = set()
    for prediction in predictions:
        participants.update(prediction.participants)
    return MarketStats(
        total_predictions=len(predictions),
        active_predictions=sum(1 for item in predictions if item.is_active(timestamp)),
        resolved_predictions=sum(1 for item in predictions if item.is_resolved),
        cancelled_predictions=sum(1 for item in predictions if item.is_cancelled),
        total_participants=len(participants),
        pool_totals={token: sum(item.total_pool(token) for item in predictions) for token in Token},
        last_updated=now,
    )


class ReconciliationEngine:
    """Drive submitted operations to a terminal state and mirror them into the cache.

    One asyncio task runs per submitted transaction. The only state shared
    between tasks is the cache store and the map of handled confirmations,
    which is only touched from the event loop thread.

    Settled confirmations are remembered for the most recent
    ``handled_limit`` transactions; transactions whose confirmation timed
    out are forgotten after ``pending_ttl`` seconds.
    """

    def __init__(
        self,
        ledger: Ledger,
        cache: CacheStore,
        *,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
        handled_limit: int = 10_000,
        pending_ttl: float = 86_400.0,
    ) -> None:
        self.ledger = ledger
        self.cache = cache
        self.settings = settings or get_settings()
        self.notifier = notifier or LogNotifier()
        self.handled_limit = handled_limit
        self.pending_ttl = pending_ttl
        self._pending: dict[str, PendingSync] = {}
        self._handled: OrderedDict[str, asyncio.Future[ReconcileResult]] = OrderedDict()
        self._tasks: set[asyncio.Task[ReconcileResult]] = set()

    # ------------------------------------------------------------------
    # Submission

    def _expire_pending(self) -> None:
        cutoff = utcnow() - timedelta(seconds=self.pending_ttl)
        expired = [
            transaction_id
            for transaction_id, pending in self._pending.items()
            if pending.state is SyncState.CONFIRMATION_TIMEOUT and pending.submitted_at < cutoff
        ]
        for transaction_id in expired:
            logger.info("Forgetting unconfirmed transaction {} after {}s", transaction_id, self.pending_ttl)
            del self._pending[transaction_id]

    def _register(self, pending: PendingSync) -> PendingSync:
        self._expire_pending()
        self._pending[pending.transaction_id] = pending
        logger.info(
            "Submitted {} {} for {} by {}",
            pending.kind.value,
            pending.transaction_id,
            pending.prediction_id,
            pending.user_address,
        )
        return pending

    async def submit_stake(
        self, prediction_id: str, user_address: str, side: Side, token: Token, amount: int
    ) -> PendingSync:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"stake amount must be a positive integer, got {amount!r}")
        user_address = normalize_address(user_address)
        transaction_id = await self.ledger.submit_stake(prediction_id, user_address, side, token, amount)
        return self._register(
            PendingSync(
                transaction_id=transaction_id,
                prediction_id=prediction_id,
                user_address=user_address,
                kind=OperationKind.STAKE,
                token=token,
                amount=amount,
            )
        )

    async def submit_resolve(self, prediction_id: str, outcome: bool, user_address: str) -> PendingSync:
        user_address = normalize_address(user_address)
        transaction_id = await self.ledger.submit_resolve(prediction_id, outcome, user_address)
        return self._register(
            PendingSync(transaction_id, prediction_id, user_address, OperationKind.RESOLVE)
        )

    async def submit_cancel(self, prediction_id: str, reason: str, user_address: str) -> PendingSync:
        user_address = normalize_address(user_address)
        transaction_id = await self.ledger.submit_cancel(prediction_id, reason, user_address)
        return self._register(
            PendingSync(transaction_id, prediction_id, user_address, OperationKind.CANCEL)
        )

    async def submit_approve(self, prediction_id: str, user_address: str) -> PendingSync:
        user_address = normalize_address(user_address)
        transaction_id = await self.ledger.submit_approve(prediction_id, user_address)
        return self._register(
            PendingSync(transaction_id, prediction_id, user_address, OperationKind.APPROVE)
        )

    async def submit_claim(self, prediction_id: str, token: Token, user_address: str) -> PendingSync:
        user_address = normalize_address(user_address)
        transaction_id = await self.ledger.submit_claim(prediction_id, token, user_address)
        return self._register(
            PendingSync(
                transaction_id, prediction_id, user_address, OperationKind.CLAIM, token=token
            )
        )

    def pending(self, transaction_id: str) -> PendingSync | None:
        return self._pending.get(transaction_id)

    # ------------------------------------------------------------------
    # Per-operation flow

    def track(self, pending: PendingSync) -> asyncio.Task[ReconcileResult]:
        task = asyncio.create_task(self.run_operation(pending), name=f"reconcile-{pending.transaction_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_operation(self, pending: PendingSync) -> ReconcileResult:
        self._pending.setdefault(pending.transaction_id, pending)
        pending.state = SyncState.AWAITING_CONFIRMATION
        try:
            status = await self.ledger.wait_for_confirmation(
                pending.transaction_id, timeout=self.settings.confirmation_timeout_seconds
            )
        except LedgerConfirmationTimeout as exc:
            # Not a failure: the transaction may still land and is left for a later trigger.
            pending.state = SyncState.CONFIRMATION_TIMEOUT
            logger.warning("{}", exc)
            self._expire_pending()
            await self._notify(
                pending.user_address,
                "Transaction status unknown",
                f"Transaction {pending.transaction_id} is still pending. Check its status later.",
            )
            return ReconcileResult(
                pending.transaction_id, pending.prediction_id, SyncState.CONFIRMATION_TIMEOUT, message=str(exc)
            )

        return await self.handle_confirmation(
            pending.transaction_id,
            status,
            prediction_id=pending.prediction_id,
            user_address=pending.user_address,
            kind=pending.kind,
        )

    async def handle_confirmation(
        self,
        transaction_id: str,
        status: ConfirmationStatus,
        *,
        prediction_id: str,
        user_address: str,
        kind: OperationKind = OperationKind.STAKE,
    ) -> ReconcileResult:
        """Apply a confirmation exactly once per transaction id.

        A repeated delivery joins the outcome of the first one instead of
        starting another sync.
        """

        existing = self._handled.get(transaction_id)
        if existing is not None:
            logger.info("Duplicate confirmation for {} joined the running sync", transaction_id)
            return await asyncio.shield(existing)

        pending = self._pending.get(transaction_id) or PendingSync(
            transaction_id=transaction_id,
            prediction_id=prediction_id,
            user_address=normalize_address(user_address),
            kind=kind,
        )
        future = asyncio.ensure_future(self._apply_confirmation(pending, status))
        self._handled[transaction_id] = future
        future.add_done_callback(partial(self._settle, transaction_id))
        return await asyncio.shield(future)

    def _settle(self, transaction_id: str, future: asyncio.Future[ReconcileResult]) -> None:
        if self._handled.get(transaction_id) is not future:
            return
        if future.cancelled() or future.exception() is not None or future.result().state not in _FINAL_STATES:
            # Degraded outcomes stay retryable through the next reconcile trigger.
            del self._handled[transaction_id]
            return
        self._handled.move_to_end(transaction_id)
        excess = len(self._handled) - self.handled_limit
        if excess <= 0:
            return
        settled = [key for key, item in self._handled.items() if item.done()][:excess]
        for key in settled:
            del self._handled[key]

    async def _apply_confirmation(self, pending: PendingSync, status: ConfirmationStatus) -> ReconcileResult:
        try:
            if status is ConfirmationStatus.FAILED:
                pending.state = SyncState.FAILED
                logger.warning("Transaction {} failed on the ledger", pending.transaction_id)
                await self._notify(
                    pending.user_address,
                    "Transaction failed",
                    f"Your {pending.kind.value} on {pending.prediction_id} was reverted. No funds moved.",
                )
                return ReconcileResult(pending.transaction_id, pending.prediction_id, SyncState.FAILED)

            pending.state = SyncState.CONFIRMED
            return await self._sync(pending)
        finally:
            self._pending.pop(pending.transaction_id, None)

    async def _sync(self, pending: PendingSync) -> ReconcileResult:
        pending.state = SyncState.SYNCING_TO_CACHE
        if self.settings.sync_grace_period_seconds:
            await asyncio.sleep(self.settings.sync_grace_period_seconds)

        max_attempts = self.settings.sync_max_attempts
        last_error: Exception | None = None
        for attempt in range(1, max_attempts + 1):
            pending.attempts = attempt
            pending.state = SyncState.SYNCING_TO_CACHE
            try:
                await self._sync_once(pending)
            except _RETRYABLE as exc:
                last_error = exc
                logger.warning(
                    "Sync attempt {}/{} for {} failed: {}", attempt, max_attempts, pending.transaction_id, exc
                )
                if attempt < max_attempts:
                    pending.state = SyncState.SYNC_RETRY
                    await asyncio.sleep(self.settings.sync_retry_delay_seconds)
                continue
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.exception("Unexpected error syncing {}; giving up on this trigger", pending.transaction_id)
                break

            pending.state = SyncState.SYNC_OK
            logger.info("Synced {} after {} attempt(s)", pending.transaction_id, attempt)
            return ReconcileResult(pending.transaction_id, pending.prediction_id, SyncState.SYNC_OK, attempts=attempt)

        pending.state = SyncState.SYNC_ABANDONED
        logger.error(
            "Abandoned cache sync for {} after {} attempt(s); periodic resync will repair it",
            pending.transaction_id,
            pending.attempts,
        )
        await self._notify(
            pending.user_address,
            "Sync delayed",
            "Your transaction is confirmed on chain. Balances may take a few minutes to update.",
        )
        return ReconcileResult(
            pending.transaction_id,
            pending.prediction_id,
            SyncState.SYNC_ABANDONED,
            attempts=pending.attempts,
            message=str(last_error) if last_error else None,
        )

    async def _sync_once(self, pending: PendingSync) -> None:
        snapshot = await self.ledger.read_prediction(pending.prediction_id)
        await asyncio.to_thread(self.cache.put_prediction, snapshot, observed_at=utcnow())
        block = snapshot.observed_block

        if pending.kind in _STAKE_AFFECTING:
            stakes = await self.ledger.read_stake(pending.prediction_id, pending.user_address)
            await asyncio.to_thread(
                self.cache.put_stakes,
                pending.prediction_id,
                pending.user_address,
                stakes,
                observed_at=utcnow(),
            )
            block = max([block, *(stake.observed_block for stake in stakes.values())])

        transaction = UserTransaction(
            transaction_id=pending.transaction_id,
            kind=pending.kind,
            prediction_id=pending.prediction_id,
            user_address=pending.user_address,
            status=TransactionStatus.SUCCESS,
            timestamp=pending.submitted_at,
            token=pending.token,
            amount=pending.amount,
            block_number=block or None,
            explorer_url=self.settings.explorer_url(pending.transaction_id),
        )
        await asyncio.to_thread(self.cache.put_transaction, transaction, observed_block=block)

    async def reconcile_now(
        self,
        prediction_id: str,
        user_address: str,
        transaction_id: str,
        kind: OperationKind = OperationKind.STAKE,
    ) -> ReconcileResult:
        """Sync trigger for callers that already observed the confirmation."""

        return await self.handle_confirmation(
            transaction_id,
            ConfirmationStatus.CONFIRMED,
            prediction_id=prediction_id,
            user_address=user_address,
            kind=kind,
        )

    async def _notify(self, user_address: str, title: str, body: str) -> None:
        try:
            await self.notifier.notify(user_address, title, body)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Notifier raised for {}: {}", user_address, exc)

    # ------------------------------------------------------------------
    # Full resync

    async def _resync_one(self, prediction_id: str, semaphore: asyncio.Semaphore) -> _PredictionResync:
        outcome = _PredictionResync(prediction_id)
        async with semaphore:
            try:
                snapshot = await self.ledger.read_prediction(prediction_id)
                observed_at = utcnow()
                cached = await asyncio.to_thread(self.cache.get_prediction, prediction_id)
                if cached is None or cached.to_dict() != snapshot.to_dict():
                    outcome.drift_repaired += 1
                await asyncio.to_thread(self.cache.put_prediction, snapshot, observed_at=observed_at)
                outcome.synced = True

                for user_address in snapshot.participants:
                    stakes = await self.ledger.read_stake(prediction_id, user_address)
                    observed_at = utcnow()
                    cached_stakes = await asyncio.to_thread(self.cache.get_stakes, prediction_id, user_address)
                    if _stake_values(cached_stakes) != _stake_values(stakes):
                        outcome.drift_repaired += 1
                    await asyncio.to_thread(
                        self.cache.put_stakes, prediction_id, user_address, stakes, observed_at=observed_at
                    )
                    outcome.stakes_synced += 1
            except _RETRYABLE as exc:
                logger.warning("Resync of {} failed: {}", prediction_id, exc)
                outcome.error = f"{prediction_id}: {exc}"
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected error resyncing {}", prediction_id)
                outcome.error = f"{prediction_id}: {exc}"
        return outcome

    async def resync_active_predictions(self) -> ResyncSummary:
        """Re-derive every active prediction and its stakes from the ledger.

        Predictions the cache still shows as open are included too, so one
        that resolved while its sync was abandoned gets its final state.
        """

        summary = ResyncSummary()
        try:
            active_ids = await self.ledger.list_active_prediction_ids()
        except LedgerReadError as exc:
            logger.error("Could not list active predictions: {}", exc)
            summary.failures.append(f"list_active_prediction_ids: {exc}")
            summary.finished_at = utcnow()
            return summary

        try:
            cached = await asyncio.to_thread(self.cache.list_predictions)
        except SyncTransientError as exc:
            logger.warning("Could not scan cached predictions: {}", exc)
            cached = []
        prediction_ids = sorted(set(active_ids) | {item.prediction_id for item in cached if item.is_open})
        summary.predictions_seen = len(prediction_ids)

        semaphore = asyncio.Semaphore(self.settings.resync_concurrency)
        outcomes = await asyncio.gather(*(self._resync_one(pid, semaphore) for pid in prediction_ids))
        for outcome in outcomes:
            summary.predictions_synced += int(outcome.synced)
            summary.stakes_synced += outcome.stakes_synced
            summary.drift_repaired += outcome.drift_repaired
            if outcome.error:
                summary.failures.append(outcome.error)

        try:
            predictions = await asyncio.to_thread(self.cache.list_predictions)
            summary.market_stats = compute_market_stats(predictions)
            await asyncio.to_thread(self.cache.put_market_stats, summary.market_stats)
        except SyncTransientError as exc:
            logger.warning("Could not refresh market stats: {}", exc)
            summary.failures.append(f"market_stats: {exc}")

        summary.finished_at = utcnow()
        logger.info(
            "Resync finished: {} predictions, {} stakes, {} drifted entries repaired, {} failures",
            summary.predictions_synced,
            summary.stakes_synced,
            summary.drift_repaired,
            len(summary.failures),
        )
        return summary

    async def verify_prediction(self, prediction_id: str) -> PredictionSnapshot:
        """Raise ``DriftError`` when the cached prediction or its stakes differ from the ledger."""

        canonical = await self.ledger.read_prediction(prediction_id)
        cached = await asyncio.to_thread(self.cache.get_prediction, prediction_id)
        cached_value = cached.to_dict() if cached else None
        if cached_value != canonical.to_dict():
            raise DriftError(CacheKeys.prediction(prediction_id), cached_value, canonical.to_dict())

        for user_address in canonical.participants:
            stakes = await self.ledger.read_stake(prediction_id, user_address)
            cached_stakes = await asyncio.to_thread(self.cache.get_stakes, prediction_id, user_address)
            if _stake_values(cached_stakes) != _stake_values(stakes):
                raise DriftError(
                    CacheKeys.stakes(prediction_id, user_address),
                    _stake_values(cached_stakes),
                    _stake_values(stakes),
                )
        return canonical

    async def run_periodic_resync(
        self, interval: float | None = None, stop_event: asyncio.Event | None = None
    ) -> int:
        interval = interval or self.settings.resync_interval_seconds
        stop_event = stop_event or asyncio.Event()
        runs = 0
        while not stop_event.is_set():
            try:
                await self.resync_active_predictions()
            except Exception:  # noqa: BLE001
                logger.exception("Periodic resync run failed; retrying in {}s", interval)
            runs += 1
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        return runs


__all__ = [
    "ReconcileResult",
    "ReconciliationEngine",
    "ResyncSummary",
    "compute_market_stats",
]
