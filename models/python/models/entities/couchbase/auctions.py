from typing import Optional, Literal
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


AuctionStatus = Literal["live", "ended", "cancelled", "paid", "payment_failed"]

AuctionPaymentStatus = Literal[
    "pending",
    "processing",
    "completed",
    "failed",
    "expired",
    "second_bidder_pending",
]


class AuctionData(BaseCouchbaseEntityData):
    # Ownership (1:1 with the listing; the document key is derived from listing_id)
    listing_id: str
    seller_id: str

    # Pricing
    start_price: float
    current_price: float

    # Schedule
    end_date: datetime
    ended_at: Optional[datetime] = None

    status: AuctionStatus = "live"

    # Denormalized high bid, updated atomically via CAS on each bid.
    # bid_count doubles as the sequence number of the latest accepted bid.
    bid_count: int = 0
    highest_bidder_id: Optional[str] = None

    # Settlement
    winner_id: Optional[str] = None
    second_bidder_id: Optional[str] = None
    # Set once the win passed to the second bidder; the cascade never goes further
    second_bidder_promoted: bool = False
    payment_status: Optional[AuctionPaymentStatus] = None
    payment_deadline: Optional[datetime] = None
    payment_completed_at: Optional[datetime] = None


class Auction(BaseModelCouchbase[AuctionData]):
    _collection_name = "auctions"
