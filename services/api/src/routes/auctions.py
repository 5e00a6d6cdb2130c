"""
API endpoints for auctions and bidding.

POST   /auctions/                  : create an auction listing (seller)
GET    /auctions/                  : live auctions (public)
GET    /auctions/my-bids           : auctions the caller bid on
POST   /auctions/determine-winners : run the settlement sweep (x-api-key)
GET    /auctions/{id}              : auction detail with ranked bids
POST   /auctions/{id}/bid          : place a bid
POST   /auctions/{id}/cancel       : seller withdrawal (no bids only)

Reads advance ended auctions on the way through, so a client never sees a
live auction past its end date.
"""

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from models.entities.couchbase.listings import ListingData
from models.operations.auctions import (
    auction_create_with_listing,
    auctions_bid_on_by,
    auctions_live,
    cancel_auction,
    derive_status,
    validate_auction_terms,
)
from models.operations.bids import place_bid, ranked_bids
from models.operations.errors import MarketplaceError
from models.operations.listings import listing_get
from settlement import notifications
from utils import log

from .dependencies import (
    get_coordinator,
    get_sweeper,
    require_authenticated,
    require_cron_key,
    require_seller,
    to_http_exception,
)

logger = log.get_logger(__name__)

router = APIRouter(prefix="/auctions", tags=["auctions"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateAuctionRequest(BaseModel):
    title: str
    description: Optional[str] = None
    category_id: Optional[str] = None
    city: Optional[str] = None
    images: List[str] = []
    storage: Optional[str] = None
    condition: Optional[str] = None
    colour: Optional[str] = None
    version: Optional[str] = None
    charge: Optional[str] = None
    box: Optional[str] = None
    warranty: Optional[str] = None
    start_price: float
    end_date: datetime


class PlaceBidRequest(BaseModel):
    amount: float


class BidResponse(BaseModel):
    id: str
    auction_id: str
    bidder_id: str
    amount: float
    placed_at: datetime
    sequence: int


class AuctionResponse(BaseModel):
    id: str
    listing_id: str
    seller_id: str
    start_price: float
    current_price: float
    end_date: datetime
    status: str
    bid_count: int
    highest_bidder_id: Optional[str] = None
    winner_id: Optional[str] = None
    second_bidder_id: Optional[str] = None
    payment_status: Optional[str] = None
    payment_deadline: Optional[datetime] = None
    payment_completed_at: Optional[datetime] = None
    # Joined listing metadata
    title: Optional[str] = None
    images: List[str] = []
    city: Optional[str] = None


class AuctionDetailResponse(AuctionResponse):
    bids: List[BidResponse] = []


class PlaceBidResponse(BaseModel):
    auction_id: str
    current_price: float
    bid_count: int


class MyBidResponse(BaseModel):
    auction: AuctionResponse
    my_highest_bid: float
    is_highest_bidder: bool


async def _auction_to_response(auction, now: Optional[datetime] = None, cls=AuctionResponse, **extra):
    """Convert an Auction entity to a response, joining listing metadata."""
    now = now or datetime.now(timezone.utc)
    d = auction.data
    listing = await listing_get(d.listing_id)
    ld = listing.data if listing else None

    return cls(
        id=auction.id,
        listing_id=d.listing_id,
        seller_id=d.seller_id,
        start_price=d.start_price,
        current_price=d.current_price,
        end_date=d.end_date,
        status=derive_status(d, now),
        bid_count=d.bid_count,
        highest_bidder_id=d.highest_bidder_id,
        winner_id=d.winner_id,
        second_bidder_id=d.second_bidder_id,
        payment_status=d.payment_status,
        payment_deadline=d.payment_deadline,
        payment_completed_at=d.payment_completed_at,
        title=ld.title if ld else None,
        images=ld.images if ld else [],
        city=ld.city if ld else None,
        **extra,
    )


def _bid_to_response(bid) -> BidResponse:
    d = bid.data
    return BidResponse(
        id=bid.id,
        auction_id=d.auction_id,
        bidder_id=d.bidder_id,
        amount=d.amount,
        placed_at=d.placed_at,
        sequence=d.sequence,
    )


# ---------------------------------------------------------------------------
# POST /auctions/: create auction listing
# ---------------------------------------------------------------------------

@router.post("/", response_model=AuctionResponse, status_code=201)
async def route_auction_create(
    body: CreateAuctionRequest,
    user: dict = Depends(require_seller),
):
    """Create an auction listing and its auction in one go."""
    seller_id = user["sub"]
    try:
        validate_auction_terms(body.start_price, body.end_date)
    except MarketplaceError as e:
        raise to_http_exception(e)

    listing_data = ListingData(
        seller_id=seller_id,
        price=body.start_price,
        **body.model_dump(exclude={"start_price", "end_date"}),
    )
    _, auction = await auction_create_with_listing(
        seller_id=seller_id,
        listing_data=listing_data,
        start_price=body.start_price,
        end_date=body.end_date,
    )
    return await _auction_to_response(auction)


# ---------------------------------------------------------------------------
# GET /auctions/: live auctions
# ---------------------------------------------------------------------------

@router.get("/", response_model=List[AuctionResponse])
async def route_auctions_live(
    limit: int = Query(default=50, le=100),
    offset: int = Query(default=0, ge=0),
    coordinator=Depends(get_coordinator),
):
    """Live auctions, soonest ending first. Ended ones are advanced and left out."""
    now = datetime.now(timezone.utc)
    result = []
    for auction in await auctions_live(limit=limit, offset=offset):
        if derive_status(auction.data, now) != "live":
            await coordinator.advance_auction(auction.id, now)
            continue
        result.append(await _auction_to_response(auction, now))
    return result


# ---------------------------------------------------------------------------
# GET /auctions/my-bids: auctions the caller bid on
# ---------------------------------------------------------------------------

@router.get("/my-bids", response_model=List[MyBidResponse])
async def route_my_bids(user: dict = Depends(require_authenticated)):
    user_id = user["sub"]
    now = datetime.now(timezone.utc)
    result = []
    for auction, my_highest in await auctions_bid_on_by(user_id):
        result.append(MyBidResponse(
            auction=await _auction_to_response(auction, now),
            my_highest_bid=my_highest,
            is_highest_bidder=auction.data.highest_bidder_id == user_id,
        ))
    return result


# ---------------------------------------------------------------------------
# POST /auctions/determine-winners: sweep trigger
# ---------------------------------------------------------------------------

@router.post("/determine-winners", dependencies=[Depends(require_cron_key)])
async def route_determine_winners(sweeper=Depends(get_sweeper)):
    """End due auctions, assign winners and run the payment sweep."""
    report = await sweeper.run()
    return {"success": True, "results": report.to_dict()}


# ---------------------------------------------------------------------------
# GET /auctions/{id}: auction detail
# ---------------------------------------------------------------------------

@router.get("/{auction_id}", response_model=AuctionDetailResponse)
async def route_auction_detail(auction_id: str, coordinator=Depends(get_coordinator)):
    """Get a single auction with its ranked bids, advancing it if it has ended."""
    auction = await coordinator.advance_auction(auction_id)
    if not auction:
        raise HTTPException(status_code=404, detail="Auction not found")
    bids = await ranked_bids(auction_id, auction.data.bid_count)
    return await _auction_to_response(
        auction,
        cls=AuctionDetailResponse,
        bids=[_bid_to_response(b) for b in bids],
    )


# ---------------------------------------------------------------------------
# POST /auctions/{id}/bid: place a bid
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/bid", response_model=PlaceBidResponse, status_code=201)
async def route_place_bid(
    auction_id: str,
    body: PlaceBidRequest,
    user: dict = Depends(require_authenticated),
    coordinator=Depends(get_coordinator),
):
    """Place a bid on a live auction."""
    bidder_id = user["sub"]
    try:
        current_price, auction = await place_bid(auction_id, bidder_id, body.amount)
    except MarketplaceError as e:
        raise to_http_exception(e)

    listing = await listing_get(auction.data.listing_id)
    coordinator.notifier.send(
        notifications.BID_PLACED,
        auction.data.seller_id,
        {
            "auction_id": auction_id,
            "title": listing.data.title if listing else None,
            "amount": current_price,
        },
    )
    return PlaceBidResponse(
        auction_id=auction_id,
        current_price=current_price,
        bid_count=auction.data.bid_count,
    )


# ---------------------------------------------------------------------------
# POST /auctions/{id}/cancel: seller withdrawal
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/cancel", response_model=AuctionResponse)
async def route_auction_cancel(
    auction_id: str,
    user: dict = Depends(require_seller),
):
    """Cancel an auction. Only allowed while live and without bids."""
    try:
        auction = await cancel_auction(auction_id, user["sub"])
    except MarketplaceError as e:
        raise to_http_exception(e)
    return await _auction_to_response(auction)
