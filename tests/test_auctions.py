from datetime import timedelta

import pytest

from conftest import NOW, listing_draft
from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.bids import Bid, BidData
from models.entities.couchbase.listings import Listing
from models.operations.auctions import (
    assign_winner,
    auction_create_with_listing,
    auction_key,
    auctions_live,
    cancel_auction,
    derive_status,
    mark_ended,
    validate_auction_terms,
)
from models.operations.bids import bid_key, place_bid, ranked_bids
from models.operations.errors import AuctionNotLive, InvalidRequest, NotAllowed
from models.operations.payments import payments_for_auction
from settlement import notifications

ENDED = NOW + timedelta(hours=2)


async def _three_bidders(auction, make_user):
    for name in ("alice", "bob", "carol"):
        await make_user(name)
    await place_bid(auction.id, "alice", 110, now=NOW)
    await place_bid(auction.id, "carol", 130, now=NOW + timedelta(minutes=1))
    await place_bid(auction.id, "bob", 150, now=NOW + timedelta(minutes=2))


def test_validate_auction_terms():
    validate_auction_terms(100, NOW + timedelta(days=1), NOW)
    with pytest.raises(InvalidRequest):
        validate_auction_terms(0, NOW + timedelta(days=1), NOW)
    with pytest.raises(InvalidRequest):
        validate_auction_terms(100, NOW, NOW)
    with pytest.raises(InvalidRequest):
        validate_auction_terms(100, (NOW + timedelta(days=1)).replace(tzinfo=None), NOW)


@pytest.mark.asyncio
async def test_create_links_listing_and_auction(make_user):
    await make_user("seller", user_type="seller")
    listing, auction = await auction_create_with_listing(
        "seller", listing_draft(), 99.999, NOW + timedelta(days=1), listing_key="l1"
    )

    assert auction.id == auction_key("l1")
    assert auction.data.start_price == 100.0
    assert auction.data.current_price == 100.0
    assert auction.data.status == "live"
    assert listing.data.listing_type == "auction"
    assert listing.data.auction_id == auction.id

    # same key again reuses both documents
    again_listing, again_auction = await auction_create_with_listing(
        "seller", listing_draft(), 100, NOW + timedelta(days=1), listing_key="l1"
    )
    assert again_listing.id == listing.id
    assert again_auction.id == auction.id


@pytest.mark.asyncio
async def test_derived_status_ends_live_auctions_on_read(make_auction):
    auction = await make_auction(ends_in=timedelta(hours=1))
    assert derive_status(auction.data, NOW) == "live"
    assert derive_status(auction.data, NOW + timedelta(hours=1)) == "ended"


@pytest.mark.asyncio
async def test_mark_ended_only_after_end_date(make_auction):
    auction = await make_auction(ends_in=timedelta(hours=1))

    early = await mark_ended(auction.id, NOW)
    assert not early.ok

    ended = await mark_ended(auction.id, ENDED)
    assert ended.ok
    assert ended.item.data.status == "ended"
    assert ended.item.data.ended_at == ENDED

    again = await mark_ended(auction.id, ENDED)
    assert not again.ok


@pytest.mark.asyncio
async def test_winner_and_second_bidder_follow_ranking(coordinator, recorder, make_auction, make_user):
    auction = await make_auction(start_price=100)
    await _three_bidders(auction, make_user)

    advanced = await coordinator.advance_auction(auction.id, ENDED)
    await coordinator.notifier.drain()

    d = advanced.data
    assert d.status == "ended"
    assert d.winner_id == "bob"
    assert d.second_bidder_id == "carol"
    assert d.current_price == 150
    assert d.payment_status == "pending"
    assert d.payment_deadline == ENDED + timedelta(hours=48)

    payments = await payments_for_auction(auction.id, "bob")
    assert len(payments) == 1
    assert payments[0].data.amount == 150
    assert payments[0].data.payment_deadline == d.payment_deadline
    assert payments[0].data.payment_link.startswith("https://pay.example/")
    assert recorder.kinds("bob") == [notifications.AUCTION_WON]


@pytest.mark.asyncio
async def test_winner_assignment_happens_once(coordinator, provider, make_auction, make_user):
    auction = await make_auction()
    await _three_bidders(auction, make_user)

    first = await coordinator.advance_auction(auction.id, ENDED)
    second = await coordinator.advance_auction(auction.id, ENDED + timedelta(minutes=5))

    assert first.data.winner_id == second.data.winner_id == "bob"
    assert second.data.payment_deadline == first.data.payment_deadline
    assert len(provider.opened) == 1
    assert len(await payments_for_auction(auction.id, "bob")) == 1

    direct = await assign_winner(auction.id, timedelta(hours=48), ENDED)
    assert not direct.ok


@pytest.mark.asyncio
async def test_same_bidder_twice_is_not_its_own_runner_up(coordinator, make_auction, make_user):
    auction = await make_auction()
    await make_user("alice")
    await make_user("bob")
    await place_bid(auction.id, "alice", 110, now=NOW)
    await place_bid(auction.id, "bob", 120, now=NOW)
    await place_bid(auction.id, "bob", 130, now=NOW)

    advanced = await coordinator.advance_auction(auction.id, ENDED)
    assert advanced.data.winner_id == "bob"
    assert advanced.data.second_bidder_id == "alice"


@pytest.mark.asyncio
async def test_winner_waits_for_latest_bid(make_auction, make_user):
    auction = await make_auction()
    await make_user("alice")
    await place_bid(auction.id, "alice", 110, now=NOW)

    # a claimed sequence whose Bid is not readable yet
    current = await Auction.get(auction.id)
    current.data.bid_count = 2
    current.data.current_price = 120
    await Auction.update(current)
    await mark_ended(auction.id, ENDED)

    result = await assign_winner(auction.id, timedelta(hours=48), ENDED)
    assert not result.ok
    assert result.item.data.winner_id is None


@pytest.mark.asyncio
async def test_winner_ranking_does_not_depend_on_the_query_index(store, coordinator, make_auction, make_user):
    auction = await make_auction(start_price=100)
    for name in ("alice", "carol", "bob"):
        await make_user(name)
    await place_bid(auction.id, "alice", 150, now=NOW)
    await place_bid(auction.id, "carol", 180, now=NOW + timedelta(minutes=1))
    await place_bid(auction.id, "bob", 200, now=NOW + timedelta(minutes=2))
    # the top bid is stored but not yet indexed
    store.unindexed.add(("bids", bid_key(auction.id, 3)))

    advanced = await coordinator.advance_auction(auction.id, ENDED)

    assert advanced.data.winner_id == "bob"
    assert advanced.data.second_bidder_id == "carol"
    payments = await payments_for_auction(auction.id, "bob")
    assert payments[0].data.amount == 200


@pytest.mark.asyncio
async def test_missing_earlier_bid_is_waited_for_then_skipped(store, make_auction, make_user):
    auction = await make_auction(start_price=100)
    for name in ("alice", "bob", "carol"):
        await make_user(name)
    await place_bid(auction.id, "alice", 110, now=NOW)
    await place_bid(auction.id, "bob", 120, now=NOW + timedelta(minutes=1))
    await place_bid(auction.id, "carol", 130, now=NOW + timedelta(minutes=2))
    # bob's insert never landed
    del store.docs("bids")[bid_key(auction.id, 2)]
    await mark_ended(auction.id, ENDED)

    early = await assign_winner(auction.id, timedelta(hours=48), ENDED + timedelta(seconds=10))
    assert not early.ok
    assert early.item.data.winner_id is None

    later = await assign_winner(auction.id, timedelta(hours=48), ENDED + timedelta(minutes=2))
    assert later.ok
    assert later.item.data.winner_id == "carol"
    assert later.item.data.second_bidder_id == "alice"


@pytest.mark.asyncio
async def test_no_bids_ends_without_winner(coordinator, provider, make_auction):
    auction = await make_auction()
    advanced = await coordinator.advance_auction(auction.id, ENDED)

    assert advanced.data.status == "ended"
    assert advanced.data.winner_id is None
    assert provider.opened == []


@pytest.mark.asyncio
async def test_live_listing_is_sorted_by_end(make_auction):
    late = await make_auction(ends_in=timedelta(hours=5), listing_key="late")
    soon = await make_auction(ends_in=timedelta(hours=1), listing_key="soon")

    live = await auctions_live()
    assert [a.id for a in live] == [soon.id, late.id]


@pytest.mark.asyncio
async def test_cancel_without_bids(make_auction):
    auction = await make_auction()
    cancelled = await cancel_auction(auction.id, "seller", NOW)

    assert cancelled.data.status == "cancelled"
    listing = await Listing.get(cancelled.data.listing_id)
    assert listing.data.status == "expired"

    with pytest.raises(AuctionNotLive):
        await cancel_auction(auction.id, "seller", NOW)


@pytest.mark.asyncio
async def test_cancel_is_refused_with_bids_or_for_others(make_auction, make_user):
    auction = await make_auction()
    await make_user("alice")

    with pytest.raises(NotAllowed):
        await cancel_auction(auction.id, "alice", NOW)

    await place_bid(auction.id, "alice", 110, now=NOW)
    with pytest.raises(InvalidRequest):
        await cancel_auction(auction.id, "seller", NOW)


@pytest.mark.asyncio
async def test_equal_amounts_go_to_the_earliest_bid(make_auction):
    auction = await make_auction(start_price=100)
    # equal top amounts cannot come through place_bid; write the ledger directly
    ledger = [("alice", 150, NOW), ("bob", 200, NOW + timedelta(minutes=1)), ("carol", 200, NOW + timedelta(minutes=2))]
    for seq, (bidder, amount, placed_at) in enumerate(ledger, start=1):
        data = BidData(auction_id=auction.id, bidder_id=bidder, amount=amount, placed_at=placed_at, sequence=seq)
        await Bid.create(data, key=bid_key(auction.id, seq))
    current = await Auction.get(auction.id)
    current.data.bid_count = 3
    current.data.current_price = 200
    current.data.highest_bidder_id = "bob"
    await Auction.update(current)

    assert [b.data.bidder_id for b in await ranked_bids(auction.id)] == ["bob", "carol", "alice"]

    await mark_ended(auction.id, ENDED)
    result = await assign_winner(auction.id, timedelta(hours=48), ENDED)
    assert result.ok
    assert result.item.data.winner_id == "bob"
    assert result.item.data.second_bidder_id == "carol"
