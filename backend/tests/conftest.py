from __future__ import annotations

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.db import build_db_components, init_db
from app.domain import (
    ApprovalStatus,
    ConfirmationStatus,
    LedgerReadError,
    PoolTotals,
    PredictionSnapshot,
    ResolutionStatus,
    StakeSnapshot,
    SyncTransientError,
    Token,
    normalize_address,
)
from app.services.cache_store import CacheStore

ALICE = "0xa11ce00000000000000000000000000000000001"
BOB = "0xb0b0000000000000000000000000000000000002"
ETHER = 10**18
FAR_FUTURE = 4_102_444_800


def make_prediction(
    prediction_id: str = "pred_v2_1",
    *,
    eth: tuple[int, int] = (0, 0),
    swipe: tuple[int, int] = (0, 0),
    resolution: ResolutionStatus = ResolutionStatus.OPEN,
    outcome: bool | None = None,
    participants: list[str] | None = None,
    deadline: int | None = None,
    approval: ApprovalStatus = ApprovalStatus.APPROVED,
    category: str = "crypto",
    observed_block: int = 100,
) -> PredictionSnapshot:
    return PredictionSnapshot(
        prediction_id=prediction_id,
        question=f"Question for {prediction_id}?",
        category=category,
        creator=ALICE,
        deadline=FAR_FUTURE if deadline is None else deadline,
        pools={
            Token.ETH: PoolTotals(yes_total=eth[0], no_total=eth[1]),
            Token.SWIPE: PoolTotals(yes_total=swipe[0], no_total=swipe[1]),
        },
        resolution=resolution,
        outcome=outcome,
        cancel_reason="duplicate market" if resolution is ResolutionStatus.CANCELLED else None,
        approval=approval,
        participants=sorted(participants or []),
        created_at=1_760_000_000,
        observed_block=observed_block,
    )


def make_stakes(
    prediction_id: str,
    user_address: str,
    *,
    eth: tuple[int, int] = (0, 0),
    swipe: tuple[int, int] = (0, 0),
    claimed: bool = False,
    observed_block: int = 100,
) -> dict[Token, StakeSnapshot]:
    user_address = normalize_address(user_address)
    return {
        Token.ETH: StakeSnapshot(
            prediction_id, user_address, Token.ETH, eth[0], eth[1], claimed, observed_block
        ),
        Token.SWIPE: StakeSnapshot(
            prediction_id, user_address, Token.SWIPE, swipe[0], swipe[1], claimed, observed_block
        ),
    }


class FakeLedger:
    """In-memory ledger gateway that records calls and can inject read failures."""

    def __init__(self) -> None:
        self.predictions: dict[str, PredictionSnapshot] = {}
        self.stakes: dict[tuple[str, str], dict[Token, StakeSnapshot]] = {}
        self.confirmations: dict[str, ConfirmationStatus | Exception] = {}
        self.submissions: list[tuple] = []
        self.submission_error: Exception | None = None
        self.active_ids: list[str] = []
        self.prediction_reads = 0
        self.failing_reads = 0
        self.closed = False

    async def _submit(self, *call) -> str:
        if self.submission_error is not None:
            raise self.submission_error
        self.submissions.append(call)
        return f"0xtx{len(self.submissions)}"

    async def submit_stake(self, prediction_id, user_address, side, token, amount) -> str:
        return await self._submit("stake", prediction_id, user_address, side, token, amount)

    async def submit_resolve(self, prediction_id, outcome, user_address) -> str:
        return await self._submit("resolve", prediction_id, outcome, user_address)

    async def submit_cancel(self, prediction_id, reason, user_address) -> str:
        return await self._submit("cancel", prediction_id, reason, user_address)

    async def submit_approve(self, prediction_id, user_address) -> str:
        return await self._submit("approve", prediction_id, user_address)

    async def submit_claim(self, prediction_id, token, user_address) -> str:
        return await self._submit("claim", prediction_id, token, user_address)

    async def wait_for_confirmation(self, transaction_id, *, timeout=None) -> ConfirmationStatus:
        outcome = self.confirmations.get(transaction_id, ConfirmationStatus.CONFIRMED)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def read_prediction(self, prediction_id) -> PredictionSnapshot:
        self.prediction_reads += 1
        if self.failing_reads:
            self.failing_reads -= 1
            raise LedgerReadError("read replica unavailable")
        if prediction_id not in self.predictions:
            raise LedgerReadError(f"unknown prediction {prediction_id}")
        return self.predictions[prediction_id]

    async def read_stake(self, prediction_id, user_address) -> dict[Token, StakeSnapshot]:
        key = (prediction_id, normalize_address(user_address))
        return self.stakes.get(key) or make_stakes(prediction_id, user_address)

    async def list_active_prediction_ids(self) -> list[str]:
        return list(self.active_ids)

    async def aclose(self) -> None:
        self.closed = True


class FlakyCacheStore(CacheStore):
    """Cache store whose prediction writes fail a configurable number of times."""

    def __init__(self, session_factory, *, failing_writes: int = 0) -> None:
        super().__init__(session_factory)
        self.failing_writes = failing_writes
        self.write_attempts = 0

    def put_prediction(self, snapshot, *, observed_at=None) -> bool:
        self.write_attempts += 1
        if self.failing_writes:
            self.failing_writes -= 1
            raise SyncTransientError("cache backend unavailable")
        return super().put_prediction(snapshot, observed_at=observed_at)


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str]] = []

    async def notify(self, user_address: str, title: str, body: str) -> None:
        self.messages.append((user_address, title, body))

    @property
    def titles(self) -> list[str]:
        return [title for _, title, _ in self.messages]


@pytest.fixture
def sample_prediction_payload() -> dict[str, object]:
    path = Path(__file__).parent / "data" / "sample_prediction.json"
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'swipe_cache.db'}",
        ledger_base_url="http://ledger.test",
        notification_webhook_url=None,
        sync_grace_period_seconds=0,
        sync_retry_delay_seconds=0,
        confirmation_poll_interval_seconds=0,
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def session_factory(test_settings):
    engine, factory = build_db_components(test_settings.resolved_database_url)
    init_db(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def cache_store(session_factory) -> CacheStore:
    return CacheStore(session_factory)


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
