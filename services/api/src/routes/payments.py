"""
API endpoints for payments.

POST   /payments/featured-listing               : feature an existing listing
POST   /payments/featured-listing-before-create : pay first, listing created on completion
POST   /payments/verified-batch                 : buy the verified badge
POST   /payments/auction-winner                 : payment link for the current winner
GET    /payments/{id}                           : payment status (owner or admin)
POST   /payments/verify/{id}                    : manual verification
POST   /payments/check-expired                  : expired-payment sweep (x-api-key)
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from models.entities.couchbase.listings import ListingData
from models.entities.couchbase.payments import AuctionTerms
from models.operations.errors import MarketplaceError, ProviderUnavailable
from models.operations.payments import payment_get
from settlement.sweeper import SweepReport
from utils import log

from .dependencies import (
    get_coordinator,
    get_sweeper,
    is_admin,
    require_authenticated,
    require_cron_key,
    to_http_exception,
)

logger = log.get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class FeaturedListingRequest(BaseModel):
    listing_id: str
    duration: int


class ListingDraftRequest(BaseModel):
    title: str
    description: Optional[str] = None
    category_id: Optional[str] = None
    price: float = 0.0
    city: Optional[str] = None
    listing_type: Literal["fixed_price", "auction"] = "fixed_price"
    images: List[str] = []
    storage: Optional[str] = None
    condition: Optional[str] = None
    colour: Optional[str] = None
    version: Optional[str] = None
    charge: Optional[str] = None
    box: Optional[str] = None
    warranty: Optional[str] = None
    quantity: int = 1
    sell_type: Optional[str] = None
    # Auction drafts only
    start_price: Optional[float] = None
    end_date: Optional[datetime] = None


class FeaturedBeforeCreateRequest(BaseModel):
    listing: ListingDraftRequest
    duration: int


class VerifiedBatchRequest(BaseModel):
    amount: float


class AuctionWinnerRequest(BaseModel):
    auction_id: str


class VerifyRequest(BaseModel):
    payment_intent_id: Optional[str] = None


class PaymentSessionResponse(BaseModel):
    success: bool = True
    payment_id: str
    payment_link: Optional[str] = None
    message: str


class PaymentResponse(BaseModel):
    id: str
    user_id: str
    payment_type: str
    listing_id: Optional[str] = None
    auction_id: Optional[str] = None
    amount: float
    currency: str
    status: str
    payment_deadline: datetime
    paid_at: Optional[datetime] = None
    payment_link: Optional[str] = None
    is_second_bidder: bool
    featured_duration_days: Optional[int] = None
    listing_pending_creation: bool = False


def _payment_to_response(payment) -> PaymentResponse:
    d = payment.data
    return PaymentResponse(
        id=payment.id,
        user_id=d.user_id,
        payment_type=d.payment_type,
        listing_id=d.listing_id,
        auction_id=d.auction_id,
        amount=d.amount,
        currency=d.currency,
        status=d.status,
        payment_deadline=d.payment_deadline,
        paid_at=d.paid_at,
        payment_link=d.payment_link,
        is_second_bidder=d.is_second_bidder,
        featured_duration_days=d.featured_duration_days,
        listing_pending_creation=d.deferred_listing is not None,
    )


# ---------------------------------------------------------------------------
# Payment creation
# ---------------------------------------------------------------------------

@router.post("/featured-listing", response_model=PaymentSessionResponse)
async def route_featured_listing(
    body: FeaturedListingRequest,
    user: dict = Depends(require_authenticated),
    coordinator=Depends(get_coordinator),
):
    try:
        payment = await coordinator.create_featured_payment(user["sub"], body.listing_id, body.duration)
    except (MarketplaceError, ProviderUnavailable) as e:
        raise to_http_exception(e)
    return PaymentSessionResponse(
        payment_id=payment.id,
        payment_link=payment.data.payment_link,
        message="Payment session created successfully",
    )


@router.post("/featured-listing-before-create", response_model=PaymentSessionResponse)
async def route_featured_listing_before_create(
    body: FeaturedBeforeCreateRequest,
    user: dict = Depends(require_authenticated),
    coordinator=Depends(get_coordinator),
):
    """Pay for featuring first; the listing is created once the payment completes."""
    draft = body.listing
    auction_terms = None
    if draft.listing_type == "auction" and draft.start_price is not None and draft.end_date is not None:
        auction_terms = AuctionTerms(start_price=draft.start_price, end_date=draft.end_date)

    listing_data = ListingData(
        seller_id=user["sub"],
        **draft.model_dump(exclude={"start_price", "end_date"}),
    )
    try:
        payment = await coordinator.create_featured_payment_before_create(
            user["sub"], listing_data, body.duration, auction_terms
        )
    except (MarketplaceError, ProviderUnavailable) as e:
        raise to_http_exception(e)
    return PaymentSessionResponse(
        payment_id=payment.id,
        payment_link=payment.data.payment_link,
        message="Payment session created successfully. Complete payment to create your featured listing.",
    )


@router.post("/verified-batch", response_model=PaymentSessionResponse)
async def route_verified_batch(
    body: VerifiedBatchRequest,
    user: dict = Depends(require_authenticated),
    coordinator=Depends(get_coordinator),
):
    try:
        payment = await coordinator.create_verified_batch_payment(user["sub"], body.amount)
    except (MarketplaceError, ProviderUnavailable) as e:
        raise to_http_exception(e)
    return PaymentSessionResponse(
        payment_id=payment.id,
        payment_link=payment.data.payment_link,
        message="Payment session created successfully",
    )


@router.post("/auction-winner", response_model=PaymentSessionResponse)
async def route_auction_winner(
    body: AuctionWinnerRequest,
    user: dict = Depends(require_authenticated),
    coordinator=Depends(get_coordinator),
):
    """Payment link for the current winner; an open session is returned as is."""
    try:
        payment = await coordinator.ensure_winner_session(body.auction_id, user["sub"])
    except (MarketplaceError, ProviderUnavailable) as e:
        raise to_http_exception(e)
    return PaymentSessionResponse(
        payment_id=payment.id,
        payment_link=payment.data.payment_link,
        message="Payment session ready",
    )


# ---------------------------------------------------------------------------
# Sweep trigger (before /{payment_id} so the path is not shadowed)
# ---------------------------------------------------------------------------

@router.post("/check-expired", dependencies=[Depends(require_cron_key)])
async def route_check_expired(sweeper=Depends(get_sweeper)):
    report = SweepReport()
    await sweeper.expire_payments(datetime.now(timezone.utc), report)
    return {"success": True, "message": "Expired payments processed", "results": report.to_dict()}


# ---------------------------------------------------------------------------
# Status and verification
# ---------------------------------------------------------------------------

@router.get("/{payment_id}", response_model=PaymentResponse)
async def route_payment_get(payment_id: str, user: dict = Depends(require_authenticated)):
    payment = await payment_get(payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    if payment.data.user_id != user["sub"] and not is_admin(user):
        raise HTTPException(status_code=403, detail="Unauthorized")
    return _payment_to_response(payment)


@router.post("/verify/{payment_id}", response_model=PaymentResponse)
async def route_payment_verify(
    payment_id: str,
    body: Optional[VerifyRequest] = None,
    user: dict = Depends(require_authenticated),
    coordinator=Depends(get_coordinator),
):
    """Re-check a payment with the provider (frontend return URL)."""
    try:
        payment = await coordinator.verify_payment(
            payment_id,
            user["sub"],
            is_admin=is_admin(user),
            intent_id=body.payment_intent_id if body else None,
        )
    except (MarketplaceError, ProviderUnavailable) as e:
        raise to_http_exception(e)
    return _payment_to_response(payment)
