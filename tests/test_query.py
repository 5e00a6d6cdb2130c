from datetime import datetime, timezone

import pytest

from clients.couchbase.query import build_count, build_select, compile_conditions, where


def test_where_rejects_unknown_operator():
    with pytest.raises(ValueError):
        where("status", "LIKE", "live%")


def test_where_in_requires_a_list():
    with pytest.raises(ValueError):
        where("status", "IN", "live")


def test_compile_uses_named_parameters():
    clause, params = compile_conditions([where("status", "=", "live"), where("bid_count", ">", 0)])
    assert clause == "status = $p0 AND bid_count > $p1"
    assert params == {"p0": "live", "p1": 0}


def test_datetime_comparisons_run_on_epoch_millis():
    when = datetime(2026, 1, 1, tzinfo=timezone.utc)
    clause, params = compile_conditions([where("end_date", "<=", when)])
    assert clause == "STR_TO_MILLIS(end_date) <= $p0"
    assert params == {"p0": int(when.timestamp() * 1000)}


def test_is_null_also_matches_missing_fields():
    clause, params = compile_conditions([where("settled_at", "is null")])
    assert clause == "(settled_at IS NULL OR settled_at IS MISSING)"
    assert params == {}


def test_in_and_not_null():
    clause, params = compile_conditions([
        where("winner_id", "IS NOT NULL"),
        where("payment_status", "IN", ("pending", "second_bidder_pending")),
    ])
    assert clause == "winner_id IS NOT NULL AND payment_status IN $p1"
    assert params == {"p1": ["pending", "second_bidder_pending"]}


def test_empty_conditions_select_everything():
    clause, params = compile_conditions([])
    assert clause == "1=1"
    assert params == {}


def test_build_select_with_order_and_paging():
    query, params = build_select(
        "`b`.`s`.`auctions`",
        [where("status", "=", "live")],
        order_by=[("end_date", "asc")],
        limit=10,
        offset=20,
    )
    assert query == (
        "SELECT META().id, * FROM `b`.`s`.`auctions` WHERE status = $p0 "
        "ORDER BY end_date ASC LIMIT 10 OFFSET 20"
    )
    assert params == {"p0": "live"}


def test_build_count():
    query, _ = build_count("`b`.`s`.`bids`", [where("auction_id", "=", "auction::1")])
    assert query == "SELECT COUNT(*) AS n FROM `b`.`s`.`bids` WHERE auction_id = $p0"
