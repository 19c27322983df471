from __future__ import annotations

import json

import httpx
import pytest

from app.domain import (
    ConfirmationStatus,
    LedgerConfirmationTimeout,
    LedgerReadError,
    LedgerSubmissionError,
    ResolutionStatus,
    Side,
    SubmissionAbandoned,
    Token,
)
from ledger import LedgerClient
from conftest import ALICE, ETHER


def _client(test_settings, handler) -> LedgerClient:
    return LedgerClient(
        base_url="http://ledger.test",
        settings=test_settings,
        transport=httpx.MockTransport(handler),
        poll_interval=0,
    )


@pytest.mark.asyncio
async def test_submit_stake_posts_normalized_payload(test_settings):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"transactionId": "0xabc"})

    async with _client(test_settings, handler) as client:
        transaction_id = await client.submit_stake(
            "pred_v2_7", ALICE.upper().replace("0X", "0x"), Side.YES, Token.SWIPE, 5 * ETHER
        )

    assert transaction_id == "0xabc"
    assert seen[0].method == "POST"
    assert seen[0].url.path == "/transactions/stake"
    assert json.loads(seen[0].content) == {
        "predictionId": 7,
        "userAddress": ALICE,
        "isYes": True,
        "token": "SWIPE",
        "amount": str(5 * ETHER),
    }


@pytest.mark.asyncio
async def test_rejected_submission_is_terminal_and_not_retried(test_settings):
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(400, json={"error": "execution reverted: prediction closed"})

    async with _client(test_settings, handler) as client:
        with pytest.raises(LedgerSubmissionError) as excinfo:
            await client.submit_resolve("pred_v2_7", True, ALICE)

    assert calls == 1
    assert "prediction closed" in str(excinfo.value)
    assert not isinstance(excinfo.value, SubmissionAbandoned)


@pytest.mark.asyncio
async def test_submission_timeout_is_abandoned(test_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("signing service timed out", request=request)

    async with _client(test_settings, handler) as client:
        with pytest.raises(SubmissionAbandoned):
            await client.submit_claim("pred_v2_7", Token.ETH, ALICE)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={}),
        httpx.Response(409, json={"error": "user rejected signature", "abandoned": True}),
    ],
)
async def test_submission_without_transaction_id_is_abandoned(test_settings, response):
    async with _client(test_settings, lambda request: response) as client:
        with pytest.raises(SubmissionAbandoned):
            await client.submit_cancel("pred_v2_7", "duplicate", ALICE)


@pytest.mark.asyncio
async def test_wait_for_confirmation_polls_until_mined(test_settings):
    statuses = iter(["pending", "pending", "success"])

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/transactions/0xabc/receipt"
        return httpx.Response(200, json={"status": next(statuses)})

    async with _client(test_settings, handler) as client:
        assert await client.wait_for_confirmation("0xabc", timeout=5) is ConfirmationStatus.CONFIRMED


@pytest.mark.asyncio
async def test_wait_for_confirmation_reports_reverted_transactions(test_settings):
    async with _client(test_settings, lambda request: httpx.Response(200, json={"status": "reverted"})) as client:
        assert await client.wait_for_confirmation("0xabc", timeout=5) is ConfirmationStatus.FAILED


@pytest.mark.asyncio
async def test_wait_for_confirmation_times_out_as_unknown(test_settings):
    async with _client(test_settings, lambda request: httpx.Response(404)) as client:
        with pytest.raises(LedgerConfirmationTimeout) as excinfo:
            await client.wait_for_confirmation("0xabc", timeout=0)

    assert excinfo.value.transaction_id == "0xabc"


@pytest.mark.asyncio
async def test_read_prediction_normalizes_gateway_payload(test_settings, sample_prediction_payload):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/predictions/7"
        return httpx.Response(200, json=sample_prediction_payload)

    async with _client(test_settings, handler) as client:
        snapshot = await client.read_prediction("pred_v2_7")

    assert snapshot.prediction_id == "pred_v2_7"
    assert snapshot.pool(Token.ETH).no_total == 3 * ETHER
    assert snapshot.resolution is ResolutionStatus.OPEN
    assert snapshot.observed_block == 2_000_000


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="upstream error"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"deadline": 0}),
    ],
)
async def test_read_prediction_failures_raise_read_errors(test_settings, response):
    async with _client(test_settings, lambda request: response) as client:
        with pytest.raises(LedgerReadError):
            await client.read_prediction("pred_v2_7")


@pytest.mark.asyncio
async def test_read_stake_and_active_ids(test_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/predictions/active":
            return httpx.Response(200, json={"ids": [3, "4"]})
        assert request.url.path == f"/predictions/7/stakes/{ALICE}"
        return httpx.Response(
            200,
            json={"ETH": {"yesAmount": str(ETHER), "noAmount": "0", "claimed": False}, "blockNumber": 77},
        )

    async with _client(test_settings, handler) as client:
        stakes = await client.read_stake("pred_v2_7", ALICE)
        active = await client.list_active_prediction_ids()

    assert stakes[Token.ETH].yes_amount == ETHER
    assert stakes[Token.SWIPE].total == 0
    assert stakes[Token.ETH].observed_block == 77
    assert active == ["pred_v2_3", "pred_v2_4"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "field, value",
    [("yesTotalAmount", 1.5e18), ("noTotalAmount", "0xZZ"), ("deadline", {"seconds": 1})],
)
async def test_malformed_prediction_records_raise_read_errors(test_settings, sample_prediction_payload, field, value):
    payload = dict(sample_prediction_payload, **{field: value})

    async with _client(test_settings, lambda request: httpx.Response(200, json=payload)) as client:
        with pytest.raises(LedgerReadError) as excinfo:
            await client.read_prediction("pred_v2_7")

    assert "malformed" in str(excinfo.value)


@pytest.mark.asyncio
async def test_malformed_stake_and_active_id_records_raise_read_errors(test_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/predictions/active":
            return httpx.Response(200, json={"ids": ["seven"]})
        return httpx.Response(200, json={"ETH": {"yesAmount": "lots", "noAmount": "0"}})

    async with _client(test_settings, handler) as client:
        with pytest.raises(LedgerReadError):
            await client.read_stake("pred_v2_7", ALICE)
        with pytest.raises(LedgerReadError):
            await client.list_active_prediction_ids()
