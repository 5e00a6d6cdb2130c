from typing import Optional, Literal
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class UserData(BaseCouchbaseEntityData):
    email: str
    name: Optional[str] = None
    user_type: Literal["buyer", "seller"] = "buyer"
    role: Literal["user", "admin"] = "user"

    # Blocking is permanent: there is no unblock path in settlement
    status: Literal["active", "blocked"] = "active"
    blocked_at: Optional[datetime] = None
    blocked_reason: Optional[str] = None

    verified_batch: bool = False
    verified_batch_purchased_at: Optional[datetime] = None


class User(BaseModelCouchbase[UserData]):
    _collection_name = "users"
