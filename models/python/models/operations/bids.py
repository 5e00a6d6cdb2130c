"""
Bid ledger: append-only bids per auction.

Bid placement is serialized per auction by a CAS write on the auction
document. The auction write claims the next sequence number (``bid_count``)
and the new price; the Bid is then inserted under ``<auction>::<sequence>``.
If that insert fails, the claim is reverted, but only while the auction still
carries it.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from couchbase.exceptions import CouchbaseException

from clients.couchbase import cas_retry, where
from models.entities.couchbase.auctions import Auction, AuctionData
from models.entities.couchbase.bids import Bid, BidData
from models.operations.errors import (
    AuctionNotFound,
    AuctionNotLive,
    BidderNotAllowed,
    ConcurrencyConflict,
    InvalidBid,
    MarketplaceError,
    SelfBid,
)
from models.operations.users import user_can_bid, user_get

logger = logging.getLogger(__name__)


def bid_key(auction_id: str, sequence: int) -> str:
    return f"{auction_id}::{sequence:06d}"


def round_money(amount: float) -> float:
    return round(float(amount), 2)


def rank_key(bid: Bid) -> Tuple[float, datetime, int]:
    """Amount descending, then earliest placement, then lowest sequence."""
    return (-bid.data.amount, bid.data.placed_at, bid.data.sequence)


async def place_bid(
    auction_id: str,
    user_id: str,
    amount: float,
    now: Optional[datetime] = None,
) -> Tuple[float, Auction]:
    """
    Place a bid and return ``(new_current_price, auction)``.

    Raises ``InvalidBid``, ``AuctionNotLive``, ``SelfBid``, ``BidderNotAllowed``,
    ``AuctionNotFound`` or ``ConcurrencyConflict``.
    """
    amount = round_money(amount)
    if amount <= 0:
        raise InvalidBid("Bid amount must be positive")

    bidder = await user_get(user_id)
    if not user_can_bid(bidder):
        raise BidderNotAllowed("Only active buyer accounts can place bids")

    now = now or datetime.now(timezone.utc)
    claim: Dict[str, object] = {}
    rejection: List[MarketplaceError] = []

    def _claim(d: AuctionData) -> Optional[str]:
        rejection.clear()
        if d.status != "live" or now >= d.end_date:
            rejection.append(AuctionNotLive(f"Auction is not live (status: {d.status})"))
        elif d.seller_id == user_id:
            rejection.append(SelfBid("You cannot bid on your own auction"))
        elif amount <= d.current_price:
            rejection.append(InvalidBid(f"Bid must be greater than the current price {d.current_price:.2f}"))
        if rejection:
            return str(rejection[0])

        claim["previous_price"] = d.current_price
        claim["previous_bidder"] = d.highest_bidder_id
        d.current_price = amount
        d.highest_bidder_id = user_id
        d.bid_count += 1
        claim["sequence"] = d.bid_count
        return None

    result = await cas_retry(Auction, auction_id, _claim)
    if result.not_found:
        raise AuctionNotFound(f"Auction {auction_id} not found")
    if not result.ok:
        if rejection:
            raise rejection[0]
        raise ConcurrencyConflict(result.error or "Concurrent update conflict, please retry")

    sequence = int(claim["sequence"])
    bid_data = BidData(
        auction_id=auction_id,
        bidder_id=user_id,
        amount=amount,
        placed_at=now,
        sequence=sequence,
    )
    try:
        await Bid.create(bid_data, key=bid_key(auction_id, sequence), user_id=user_id)
    except CouchbaseException:
        logger.error(f"Bid insert failed for auction {auction_id} seq={sequence}, reverting claim", exc_info=True)
        await _revert_claim(
            auction_id,
            user_id,
            amount,
            sequence,
            claim["previous_price"],
            claim["previous_bidder"],
        )
        raise

    logger.info(f"Bid accepted on auction {auction_id}: user={user_id} amount={amount:.2f} seq={sequence}")
    return amount, result.item


async def _revert_claim(
    auction_id: str,
    user_id: str,
    amount: float,
    sequence: int,
    previous_price,
    previous_bidder,
) -> None:
    def _revert(d: AuctionData) -> Optional[str]:
        if d.bid_count != sequence or d.highest_bidder_id != user_id or d.current_price != amount:
            return "Claim superseded by a later bid"
        d.current_price = previous_price
        d.highest_bidder_id = previous_bidder
        d.bid_count = sequence - 1
        return None

    result = await cas_retry(Auction, auction_id, _revert)
    if not result.ok:
        logger.warning(f"Claim revert skipped for auction {auction_id} seq={sequence}: {result.error}")


async def ranked_bids(auction_id: str, count: Optional[int] = None) -> List[Bid]:
    """
    All bids of an auction, best first.

    Bids are read by key for sequences ``1..count`` (the auction's
    ``bid_count`` when *count* is omitted) rather than through the index, so a
    bid is visible as soon as its insert returned. A sequence without a
    document is a claim whose insert has not landed or failed.
    """
    if count is None:
        auction = await Auction.get(auction_id)
        if not auction:
            return []
        count = auction.data.bid_count
    bids = await asyncio.gather(*(Bid.get(bid_key(auction_id, seq)) for seq in range(1, count + 1)))
    return sorted((b for b in bids if b is not None), key=rank_key)


async def bid_count(auction_id: str) -> int:
    return await Bid.count([where("auction_id", "=", auction_id)])


async def bid_get(auction_id: str, sequence: int) -> Optional[Bid]:
    return await Bid.get(bid_key(auction_id, sequence))


async def bids_by_bidder(bidder_id: str, limit: Optional[int] = None) -> List[Bid]:
    """A bidder's bids, most recent first."""
    bids = await Bid.find([where("bidder_id", "=", bidder_id)])
    bids.sort(key=lambda b: (b.data.placed_at, b.data.sequence), reverse=True)
    return bids[:limit] if limit else bids
