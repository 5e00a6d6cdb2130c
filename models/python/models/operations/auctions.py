"""
Auction state machine with CAS-guarded transitions.

States: ``live -> ended -> {paid, payment_failed}`` and ``live -> cancelled``.
Every transition is a conditional read-modify-write through ``cas_retry`` so
the sweeper and read paths can race without double-applying anything.
Transitions return a ``CasResult``; ``ok=False`` with an error string is a
benign "nothing to do" unless ``not_found`` is set.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from clients.couchbase import CasResult, DocumentExistsException, cas_retry, where
from models.entities.couchbase.auctions import Auction, AuctionData
from models.entities.couchbase.listings import Listing, ListingData
from models.operations.bids import bid_get, bids_by_bidder, ranked_bids
from models.operations.errors import (
    AuctionNotFound,
    AuctionNotLive,
    ConcurrencyConflict,
    InvalidRequest,
    MarketplaceError,
    NotAllowed,
)
from models.operations.listings import listing_create, listing_set_status

logger = logging.getLogger(__name__)

# How long after the end a missing earlier bid is still waited for before it
# is taken as a failed insert
BID_INSERT_GRACE = timedelta(minutes=1)


def auction_key(listing_id: str) -> str:
    return f"auction::{listing_id}"


def derive_status(auction: AuctionData, now: datetime) -> str:
    """Effective status at *now*: a live auction past its end is ended."""
    if auction.status == "live" and now >= auction.end_date:
        return "ended"
    return auction.status


def validate_auction_terms(start_price: float, end_date: datetime, now: Optional[datetime] = None) -> None:
    now = now or datetime.now(timezone.utc)
    if start_price is None or start_price <= 0:
        raise InvalidRequest("Start price must be positive")
    if end_date.tzinfo is None:
        raise InvalidRequest("End date must carry a timezone")
    if end_date <= now:
        raise InvalidRequest("End date must be in the future")


# ---------------------------------------------------------------------------
# Creation and queries
# ---------------------------------------------------------------------------

async def auction_create_with_listing(
    seller_id: str,
    listing_data: ListingData,
    start_price: float,
    end_date: datetime,
    listing_key: Optional[str] = None,
) -> Tuple[Listing, Auction]:
    """Create an auction listing together with its Auction document.

    Both keys are deterministic once *listing_key* is known, so a repeated
    call (e.g. a retried pay-before-create materialization) reuses what an
    earlier call already wrote.
    """
    listing_key = listing_key or str(uuid.uuid4())
    auction_id = auction_key(listing_key)
    start_price = round(float(start_price), 2)

    listing_data.listing_type = "auction"
    listing_data.price = start_price
    listing_data.auction_id = auction_id
    listing = await listing_create(seller_id, listing_data, key=listing_key)

    data = AuctionData(
        listing_id=listing.id,
        seller_id=seller_id,
        start_price=start_price,
        current_price=start_price,
        end_date=end_date,
    )
    try:
        auction = await Auction.create(data, key=auction_id, user_id=seller_id)
    except DocumentExistsException:
        auction = await Auction.get(auction_id)
        if auction is None:
            raise
        logger.info(f"Auction {auction_id} already exists, reusing it")
    else:
        logger.info(f"Auction {auction_id} created for listing {listing.id} (start {start_price:.2f})")
    return listing, auction


async def auction_get(auction_id: str) -> Optional[Auction]:
    return await Auction.get(auction_id)


async def auctions_live(limit: int = 50, offset: int = 0) -> List[Auction]:
    """Live auctions, soonest ending first."""
    auctions = await Auction.find([where("status", "=", "live")])
    auctions.sort(key=lambda a: a.data.end_date)
    return auctions[offset:offset + limit]


async def auctions_past_end(now: datetime) -> List[Auction]:
    return await Auction.find([
        where("status", "=", "live"),
        where("end_date", "<=", now),
    ])


async def auctions_awaiting_winner() -> List[Auction]:
    return await Auction.find([
        where("status", "=", "ended"),
        where("winner_id", "IS NULL"),
        where("bid_count", ">", 0),
    ])


async def auctions_with_unpaid_winner() -> List[Auction]:
    return await Auction.find([
        where("status", "=", "ended"),
        where("winner_id", "IS NOT NULL"),
        where("payment_status", "IN", ["pending", "second_bidder_pending", "processing"]),
    ])


async def auctions_bid_on_by(user_id: str) -> List[Tuple[Auction, float]]:
    """Auctions *user_id* bid on, each with that user's highest bid."""
    highest: Dict[str, float] = {}
    order: List[str] = []
    for bid in await bids_by_bidder(user_id):
        aid = bid.data.auction_id
        if aid not in highest:
            order.append(aid)
            highest[aid] = bid.data.amount
        else:
            highest[aid] = max(highest[aid], bid.data.amount)

    result = []
    for aid in order:
        auction = await Auction.get(aid)
        if auction:
            result.append((auction, highest[aid]))
    return result


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------

async def mark_ended(auction_id: str, now: Optional[datetime] = None) -> CasResult:
    """``live -> ended`` once the end time has passed. Idempotent."""
    now = now or datetime.now(timezone.utc)

    def _mutate(d: AuctionData) -> Optional[str]:
        if d.status != "live":
            return f"Auction is {d.status}"
        if now < d.end_date:
            return "Auction has not reached its end date"
        d.status = "ended"
        d.ended_at = now
        return None

    result = await cas_retry(Auction, auction_id, _mutate)
    if result.ok:
        logger.info(f"Auction {auction_id} ended with {result.item.data.bid_count} bids")
    return result


async def assign_winner(
    auction_id: str,
    payment_window: timedelta,
    now: Optional[datetime] = None,
) -> CasResult:
    """
    Pick winner and second bidder of an ended auction, at most once.

    Guarded on ``winner_id is None``. Refused while the bid holding the
    latest sequence number is not yet readable, so a bid accepted right before
    the end cannot be skipped; a later pass assigns the winner instead. Earlier
    sequences still missing are waited for during ``BID_INSERT_GRACE`` after
    the end, since one of them may hold the runner-up.
    """
    now = now or datetime.now(timezone.utc)
    auction = await Auction.get(auction_id)
    if not auction:
        return CasResult(ok=False, error=f"Auction {auction_id} not found", not_found=True)

    d = auction.data
    if d.status != "ended":
        return CasResult(ok=False, error=f"Auction is {d.status}", item=auction)
    if d.winner_id is not None:
        return CasResult(ok=False, error="Winner already assigned", item=auction)
    if d.bid_count == 0:
        return CasResult(ok=False, error="No bids", item=auction)
    if await bid_get(auction_id, d.bid_count) is None:
        logger.info(f"Auction {auction_id}: latest bid #{d.bid_count} not materialized yet, deferring winner")
        return CasResult(ok=False, error="Latest bid not materialized yet", item=auction)

    ranked = await ranked_bids(auction_id, d.bid_count)
    if len(ranked) != d.bid_count:
        ended_at = d.ended_at or d.end_date
        if now < ended_at + BID_INSERT_GRACE:
            logger.info(
                f"Auction {auction_id}: {len(ranked)} of {d.bid_count} bids readable, deferring winner"
            )
            return CasResult(ok=False, error="Bids not materialized yet", item=auction)
        logger.warning(f"Auction {auction_id}: ranking {len(ranked)} of {d.bid_count} bids, the rest never landed")
    winner_id = ranked[0].data.bidder_id
    second_bidder_id = next(
        (b.data.bidder_id for b in ranked[1:] if b.data.bidder_id != winner_id), None
    )
    expected_count = d.bid_count

    def _mutate(ad: AuctionData) -> Optional[str]:
        if ad.status != "ended":
            return f"Auction is {ad.status}"
        if ad.winner_id is not None:
            return "Winner already assigned"
        if ad.bid_count != expected_count:
            return "Bids changed since ranking"
        ad.winner_id = winner_id
        ad.second_bidder_id = second_bidder_id
        ad.payment_status = "pending"
        ad.payment_deadline = now + payment_window
        return None

    result = await cas_retry(Auction, auction_id, _mutate)
    if result.ok:
        logger.info(
            f"Auction {auction_id} winner={winner_id} second={second_bidder_id} "
            f"price={d.current_price:.2f} deadline={result.item.data.payment_deadline.isoformat()}"
        )
    return result


async def mark_paid(auction_id: str, winner_id: str, now: Optional[datetime] = None) -> CasResult:
    """``ended -> paid`` for the current winner."""
    now = now or datetime.now(timezone.utc)

    def _mutate(d: AuctionData) -> Optional[str]:
        if d.status == "paid":
            return "Auction already paid"
        if d.status != "ended":
            return f"Auction is {d.status}"
        if d.winner_id != winner_id:
            return f"User {winner_id} is not the current winner"
        d.status = "paid"
        d.payment_status = "completed"
        d.payment_completed_at = now
        return None

    return await cas_retry(Auction, auction_id, _mutate)


async def promote_second_bidder(
    auction_id: str,
    expected_winner_id: str,
    payment_window: timedelta,
    now: Optional[datetime] = None,
) -> CasResult:
    """Hand the win to the second bidder, once. Guarded on the expected current winner."""
    now = now or datetime.now(timezone.utc)

    def _mutate(d: AuctionData) -> Optional[str]:
        if d.status != "ended":
            return f"Auction is {d.status}"
        if d.winner_id != expected_winner_id:
            return "Winner changed"
        if d.second_bidder_promoted:
            return "Second bidder already promoted"
        if not d.second_bidder_id:
            return "No second bidder"
        d.winner_id = d.second_bidder_id
        d.second_bidder_id = None
        d.second_bidder_promoted = True
        d.payment_status = "second_bidder_pending"
        d.payment_deadline = now + payment_window
        return None

    return await cas_retry(Auction, auction_id, _mutate)


async def mark_payment_failed(auction_id: str, expected_winner_id: str) -> CasResult:
    """``ended -> payment_failed`` when nobody is left to pay."""

    def _mutate(d: AuctionData) -> Optional[str]:
        if d.status != "ended":
            return f"Auction is {d.status}"
        if d.winner_id != expected_winner_id:
            return "Winner changed"
        d.status = "payment_failed"
        d.payment_status = "expired"
        return None

    return await cas_retry(Auction, auction_id, _mutate)


def awaiting_payment_status(d: AuctionData) -> str:
    return "second_bidder_pending" if d.second_bidder_promoted else "pending"


async def set_payment_status(auction_id: str, winner_id: str, payment_status: str) -> CasResult:
    """Mirror the winner's payment state onto the auction while it awaits that winner."""

    def _mutate(d: AuctionData) -> Optional[str]:
        if d.status != "ended" or d.winner_id != winner_id:
            return "Auction no longer awaits this winner"
        if d.payment_status == payment_status:
            return "Unchanged"
        d.payment_status = payment_status
        return None

    return await cas_retry(Auction, auction_id, _mutate)


async def clear_processing(auction_id: str, winner_id: str) -> CasResult:
    """``processing -> pending`` (or ``second_bidder_pending``) once the in-flight payment closed."""

    def _mutate(d: AuctionData) -> Optional[str]:
        if d.status != "ended" or d.winner_id != winner_id:
            return "Auction no longer awaits this winner"
        if d.payment_status != "processing":
            return f"Payment status is {d.payment_status}"
        d.payment_status = awaiting_payment_status(d)
        return None

    return await cas_retry(Auction, auction_id, _mutate)


async def cancel_auction(auction_id: str, seller_id: str, now: Optional[datetime] = None) -> Auction:
    """Seller withdrawal: ``live -> cancelled``, only while nobody has bid."""
    now = now or datetime.now(timezone.utc)
    rejection: List[MarketplaceError] = []

    def _mutate(d: AuctionData) -> Optional[str]:
        rejection.clear()
        if d.seller_id != seller_id:
            rejection.append(NotAllowed("Only the seller can cancel this auction"))
        elif derive_status(d, now) != "live":
            rejection.append(AuctionNotLive(f"Auction is not live (status: {derive_status(d, now)})"))
        elif d.bid_count > 0:
            rejection.append(InvalidRequest("Cannot cancel an auction that has bids"))
        if rejection:
            return str(rejection[0])
        d.status = "cancelled"
        return None

    result = await cas_retry(Auction, auction_id, _mutate)
    if result.not_found:
        raise AuctionNotFound(f"Auction {auction_id} not found")
    if not result.ok:
        if rejection:
            raise rejection[0]
        raise ConcurrencyConflict(result.error or "Concurrent update conflict, please retry")

    listing_result = await listing_set_status(result.item.data.listing_id, "expired")
    if not listing_result.ok:
        logger.warning(f"Auction {auction_id} cancelled but listing not updated: {listing_result.error}")
    logger.info(f"Auction {auction_id} cancelled by seller {seller_id}")
    return result.item
