from datetime import datetime
from pydantic import Field
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class BidData(BaseCouchbaseEntityData):
    auction_id: str
    bidder_id: str
    amount: float = Field(gt=0)
    placed_at: datetime
    sequence: int


class Bid(BaseModelCouchbase[BidData]):
    _collection_name = "bids"
