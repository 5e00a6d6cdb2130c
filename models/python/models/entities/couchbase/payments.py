from typing import List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from models.entities.couchbase.listings import ListingData


PaymentType = Literal["featured_listing", "auction_winner", "verified_batch"]

PaymentStatus = Literal["pending", "processing", "completed", "failed", "refunded", "expired"]

ACTIVE_PAYMENT_STATUSES = ("pending", "processing")
TERMINAL_PAYMENT_STATUSES = ("completed", "failed", "refunded", "expired")


class AuctionTerms(BaseModel):
    start_price: float
    end_date: datetime


class DeferredListing(BaseModel):
    """Listing fields held by a pay-before-create featured payment.

    Materialized into a Listing (and an Auction for auction drafts) once the
    payment completes, then cleared from the payment.
    """
    kind: Literal["listing_draft"] = "listing_draft"
    listing: ListingData
    auction: Optional[AuctionTerms] = None


class PaymentData(BaseCouchbaseEntityData):
    user_id: str
    payment_type: PaymentType
    listing_id: Optional[str] = None
    auction_id: Optional[str] = None

    # Stored in base units (AED), rounded to 2 decimals
    amount: float
    currency: str = "AED"

    # Provider session
    provider: Optional[str] = None
    intent_id: Optional[str] = None
    payment_link: Optional[str] = None

    status: PaymentStatus = "pending"
    payment_deadline: datetime
    paid_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    # Set once the completion side effects (listing sold, featured, badge) are applied
    settled_at: Optional[datetime] = None

    is_second_bidder: bool = False
    featured_duration_days: Optional[int] = None
    deferred_listing: Optional[DeferredListing] = None

    # Reminder windows (hours before deadline) already notified
    reminders_sent: List[int] = []


class Payment(BaseModelCouchbase[PaymentData]):
    _collection_name = "payments"
