from typing import List, Optional, Literal
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class ListingData(BaseCouchbaseEntityData):
    seller_id: str
    category_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    price: float
    city: Optional[str] = None
    listing_type: Literal["fixed_price", "auction"] = "fixed_price"
    status: Literal["active", "sold", "expired", "blocked"] = "active"
    images: List[str] = []

    # Phone attributes
    storage: Optional[str] = None
    condition: Optional[str] = None
    colour: Optional[str] = None
    version: Optional[str] = None
    charge: Optional[str] = None
    box: Optional[str] = None
    warranty: Optional[str] = None
    quantity: int = 1
    sell_type: Optional[str] = None

    is_featured: bool = False
    featured_expiry_date: Optional[datetime] = None

    auction_id: Optional[str] = None
    sold_at: Optional[datetime] = None


class Listing(BaseModelCouchbase[ListingData]):
    _collection_name = "listings"
