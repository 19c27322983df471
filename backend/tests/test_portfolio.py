from __future__ import annotations

import pytest

from app.domain import ApprovalStatus, ResolutionStatus, Token, ValidationError
from app.services.portfolio_service import (
    PortfolioAggregator,
    PositionStatus,
    PredictionPosition,
    aggregate_totals,
    aggregate_wins_losses,
    build_leaderboard,
)
from conftest import ALICE, BOB, ETHER, make_prediction, make_stakes


def _position(prediction, **stakes):
    return PredictionPosition(prediction, make_stakes(prediction.prediction_id, ALICE, **stakes))


def _resolved(prediction_id="pred_v2_1", *, outcome=True, eth=(2 * ETHER, ETHER), swipe=(0, 0)):
    return make_prediction(
        prediction_id, eth=eth, swipe=swipe, resolution=ResolutionStatus.RESOLVED, outcome=outcome
    )


def test_any_token_win_counts_the_prediction_as_a_win():
    prediction = _resolved(eth=(ETHER, ETHER), swipe=(10 * ETHER, 10 * ETHER))
    # Lost on ETH (staked NO), won on SWIPE (staked YES).
    position = _position(prediction, eth=(0, ETHER), swipe=(10 * ETHER, 0))

    summary = aggregate_wins_losses([position])

    assert summary.wins == 1
    assert summary.losses == 0
    assert summary.win_rate == 100.0
    assert position.status() is PositionStatus.WON


def test_loss_requires_losing_in_every_staked_token():
    lost_everywhere = _position(
        _resolved("pred_v2_1", outcome=False, eth=(ETHER, ETHER), swipe=(ETHER, ETHER)),
        eth=(ETHER, 0),
        swipe=(ETHER, 0),
    )
    won = _position(_resolved("pred_v2_2", outcome=True), eth=(ETHER, 0))

    summary = aggregate_wins_losses([lost_everywhere, won])

    assert (summary.wins, summary.losses) == (1, 1)
    assert summary.win_rate == pytest.approx(50.0)
    assert lost_everywhere.status() is PositionStatus.LOST


def test_open_and_cancelled_predictions_are_not_counted():
    open_position = _position(make_prediction("pred_v2_1", eth=(ETHER, 0)), eth=(ETHER, 0))
    cancelled = _position(
        make_prediction("pred_v2_2", eth=(ETHER, 0), resolution=ResolutionStatus.CANCELLED), eth=(ETHER, 0)
    )

    summary = aggregate_wins_losses([open_position, cancelled])

    assert summary.settled == 0
    assert summary.win_rate == 0.0


def test_totals_include_settled_payouts_and_cancelled_refunds():
    won = _position(_resolved("pred_v2_1", outcome=True, eth=(2 * ETHER, ETHER)), eth=(2 * ETHER, 0))
    refunded = _position(
        make_prediction("pred_v2_2", eth=(0, ETHER), resolution=ResolutionStatus.CANCELLED), eth=(0, ETHER)
    )
    lost = _position(_resolved("pred_v2_3", outcome=False, eth=(ETHER, 3 * ETHER)), eth=(ETHER, 0))

    totals = aggregate_totals([won, refunded, lost], Token.ETH, 100)

    assert totals.staked == 4 * ETHER
    assert totals.payout == 2_990_000_000_000_000_000 + ETHER
    assert totals.profit == -10**16
    assert totals.roi == pytest.approx(-0.25)


def test_totals_report_open_positions_separately():
    open_position = _position(make_prediction("pred_v2_1", eth=(3 * ETHER, ETHER)), eth=(ETHER, 0))

    totals = aggregate_totals([open_position], Token.ETH, 100)

    assert totals.staked == 0
    assert totals.roi == 0.0
    assert totals.open_staked == ETHER
    # 1/3 of the 0.99 ETH distributable NO pool.
    assert totals.potential_payout == ETHER + 330_000_000_000_000_000


def test_roi_is_zero_without_any_stake():
    totals = aggregate_totals([], Token.SWIPE, 100)

    assert totals.staked == 0
    assert totals.roi == 0.0


def test_position_status_and_claimable_amounts():
    won = _position(_resolved(outcome=True), eth=(2 * ETHER, 0))
    claimed = PredictionPosition(
        won.prediction, make_stakes("pred_v2_1", ALICE, eth=(2 * ETHER, 0), claimed=True)
    )
    cancelled = _position(
        make_prediction("pred_v2_2", eth=(ETHER, 0), resolution=ResolutionStatus.CANCELLED), eth=(ETHER, 0)
    )
    expired = _position(make_prediction("pred_v2_3", deadline=1_700_000_000), eth=(ETHER, 0))
    awaiting_approval = _position(
        make_prediction("pred_v2_4", approval=ApprovalStatus.PENDING_APPROVAL), eth=(ETHER, 0)
    )

    assert won.claimable(Token.ETH, 100) == 2_990_000_000_000_000_000
    assert won.claimable(Token.SWIPE, 100) == 0
    assert claimed.claimable(Token.ETH, 100) == 0
    assert cancelled.claimable(Token.ETH, 100) == ETHER
    assert cancelled.status() is PositionStatus.CANCELLED
    assert expired.status() is PositionStatus.PENDING
    assert awaiting_approval.status() is PositionStatus.PENDING
    assert _position(make_prediction("pred_v2_5"), eth=(ETHER, 0)).status() is PositionStatus.ACTIVE


def test_aggregator_reads_positions_from_cache(cache_store):
    cache_store.put_prediction(_resolved("pred_v2_1", outcome=True, eth=(2 * ETHER, ETHER)))
    cache_store.put_prediction(make_prediction("pred_v2_2", swipe=(5 * ETHER, 0)))
    cache_store.put_stakes("pred_v2_1", ALICE, make_stakes("pred_v2_1", ALICE, eth=(2 * ETHER, 0)))
    cache_store.put_stakes("pred_v2_2", ALICE, make_stakes("pred_v2_2", ALICE, swipe=(5 * ETHER, 0)))
    cache_store.put_stakes("pred_v2_1", BOB, make_stakes("pred_v2_1", BOB, eth=(0, ETHER)))
    # Stakes whose prediction has not been cached yet are skipped.
    cache_store.put_stakes("pred_v2_9", ALICE, make_stakes("pred_v2_9", ALICE, eth=(ETHER, 0)))

    summary = PortfolioAggregator(cache_store, fee_rate_bps=100).summarize(ALICE.upper().replace("0X", "0x"))

    assert summary.user_address == ALICE
    assert [position.prediction_id for position in summary.positions] == ["pred_v2_1", "pred_v2_2"]
    assert summary.wins_losses.wins == 1
    assert summary.totals[Token.ETH].profit == 990_000_000_000_000_000
    assert summary.totals[Token.SWIPE].open_staked == 5 * ETHER

    payload = summary.to_dict()
    assert payload["positions"][0]["status"] == "won"
    assert payload["positions"][0]["claimable"]["ETH"] == 2_990_000_000_000_000_000
    assert payload["positions"][1]["status"] == "active"
    assert payload["totals"]["ETH"]["roi"] == pytest.approx(49.5)


CAROL = "0xc0c0000000000000000000000000000000000003"


def _leaderboard_positions():
    won = _resolved("pred_v2_1", outcome=True, eth=(2 * ETHER, ETHER))
    still_open = make_prediction("pred_v2_2", eth=(0, 5 * ETHER), swipe=(ETHER, 0))
    return {
        ALICE: [PredictionPosition(won, make_stakes("pred_v2_1", ALICE, eth=(2 * ETHER, 0)))],
        BOB: [
            PredictionPosition(won, make_stakes("pred_v2_1", BOB, eth=(0, ETHER))),
            PredictionPosition(still_open, make_stakes("pred_v2_2", BOB, eth=(0, 5 * ETHER))),
        ],
        CAROL: [PredictionPosition(still_open, make_stakes("pred_v2_2", CAROL, swipe=(ETHER, 0)))],
    }


def test_leaderboard_ranks_users_per_token():
    positions = _leaderboard_positions()

    by_profit = build_leaderboard(positions, Token.ETH, 100)
    by_staked = build_leaderboard(positions, Token.ETH, 100, sort_by="staked")

    assert [(entry.rank, entry.user_address) for entry in by_profit] == [(1, ALICE), (2, BOB)]
    assert by_profit[0].totals.profit == 990_000_000_000_000_000
    assert by_profit[1].totals.profit == -ETHER
    assert [entry.user_address for entry in by_staked] == [BOB, ALICE]
    assert by_staked[0].total_staked == 6 * ETHER
    # Only users with a stake in the token are ranked.
    assert [entry.user_address for entry in build_leaderboard(positions, Token.SWIPE, 100)] == [CAROL]


def test_leaderboard_by_wins_limits_and_breaks_ties_by_address():
    positions = _leaderboard_positions()

    top = build_leaderboard(positions, Token.ETH, 100, sort_by="wins", limit=1)
    entry = top[0].to_dict()

    assert len(top) == 1
    assert entry["user_address"] == ALICE
    assert (entry["wins"], entry["losses"], entry["win_rate"]) == (1, 0, 100.0)
    assert entry["display_name"] == "0xa11c...0001"

    tied = {BOB: positions[ALICE], ALICE: positions[ALICE]}
    assert [item.user_address for item in build_leaderboard(tied, Token.ETH, 100)] == [ALICE, BOB]


def test_leaderboard_rejects_unknown_sort():
    with pytest.raises(ValidationError):
        build_leaderboard({}, Token.ETH, 100, sort_by="volume")


def test_aggregator_leaderboard_reads_every_cached_user(cache_store):
    cache_store.put_prediction(_resolved("pred_v2_1", outcome=True, eth=(2 * ETHER, ETHER)))
    cache_store.put_stakes("pred_v2_1", ALICE, make_stakes("pred_v2_1", ALICE, eth=(2 * ETHER, 0)))
    cache_store.put_stakes("pred_v2_1", BOB, make_stakes("pred_v2_1", BOB, eth=(0, ETHER)))
    # Stakes whose prediction has not been cached yet are skipped.
    cache_store.put_stakes("pred_v2_9", CAROL, make_stakes("pred_v2_9", CAROL, eth=(ETHER, 0)))

    entries = PortfolioAggregator(cache_store, fee_rate_bps=100).leaderboard(Token.ETH)

    assert [(entry.rank, entry.user_address, entry.totals.profit) for entry in entries] == [
        (1, ALICE, 990_000_000_000_000_000),
        (2, BOB, -ETHER),
    ]
