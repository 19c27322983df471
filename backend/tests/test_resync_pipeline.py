from __future__ import annotations

import json

import pytest

from app.domain import Token
from pipelines.resync_run import ResyncPipeline, _parse_args, _write_summary
from conftest import ALICE, ETHER, make_prediction, make_stakes


@pytest.mark.asyncio
async def test_run_once_populates_cache_and_writes_summary(test_settings, fake_ledger, cache_store, tmp_path):
    fake_ledger.predictions["pred_v2_3"] = make_prediction("pred_v2_3", eth=(ETHER, 0), participants=[ALICE])
    fake_ledger.stakes[("pred_v2_3", ALICE)] = make_stakes("pred_v2_3", ALICE, eth=(ETHER, 0))
    fake_ledger.active_ids = ["pred_v2_3"]
    pipeline = ResyncPipeline(test_settings, ledger=fake_ledger, cache=cache_store)

    try:
        summary = await pipeline.run_once()
    finally:
        await pipeline.close()

    assert fake_ledger.closed
    assert summary.ok
    assert cache_store.get_stakes("pred_v2_3", ALICE)[Token.ETH].yes_amount == ETHER

    path = tmp_path / "reports" / "resync.json"
    _write_summary(summary, path)
    report = json.loads(path.read_text())
    assert report["predictions_synced"] == 1
    assert report["market_stats"]["active_predictions"] == 1


def test_parse_args():
    args = _parse_args(["--once", "--interval", "30", "--summary-path", "out/summary.json"])

    assert args.once is True
    assert args.interval == 30.0
    assert str(args.summary_path) == "out/summary.json"
