import logging
from datetime import datetime, timezone
from typing import Optional

from clients.couchbase import CasResult, DocumentExistsException, cas_retry
from models.entities.couchbase.listings import Listing, ListingData

logger = logging.getLogger(__name__)


async def listing_get(listing_id: str) -> Optional[Listing]:
    return await Listing.get(listing_id)


async def listing_create(seller_id: str, data: ListingData, key: Optional[str] = None) -> Listing:
    """Create a listing; with an explicit *key* a repeated call returns the existing document."""
    data.seller_id = seller_id
    try:
        return await Listing.create(data, key=key, user_id=seller_id)
    except DocumentExistsException:
        if key is None:
            raise
        existing = await Listing.get(key)
        if existing is None:
            raise
        logger.info(f"Listing {key} already exists, reusing it")
        return existing


async def listing_mark_sold(listing_id: str, now: Optional[datetime] = None) -> CasResult:
    now = now or datetime.now(timezone.utc)

    def _mutate(d: ListingData) -> Optional[str]:
        if d.status == "sold":
            return "Listing already sold"
        d.status = "sold"
        d.sold_at = now
        return None

    return await cas_retry(Listing, listing_id, _mutate)


async def listing_mark_featured(listing_id: str, until: datetime) -> CasResult:
    def _mutate(d: ListingData) -> Optional[str]:
        d.is_featured = True
        d.featured_expiry_date = until
        return None

    return await cas_retry(Listing, listing_id, _mutate)


async def listing_set_status(listing_id: str, status: str) -> CasResult:
    def _mutate(d: ListingData) -> Optional[str]:
        if d.status == "sold":
            return "Listing is sold"
        d.status = status
        return None

    return await cas_retry(Listing, listing_id, _mutate)

