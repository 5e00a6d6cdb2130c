from datetime import datetime, timezone
from typing import Optional

from clients.couchbase import CasResult, cas_retry
from models.entities.couchbase.users import User, UserData


async def user_get(user_id: str) -> Optional[User]:
    return await User.get(user_id)


async def user_create_if_not_exists_and_get(user_id: str, email: str) -> User:
    existing_user = await User.get(user_id)
    if existing_user:
        return existing_user
    new_user_data = UserData(email=email)
    return await User.create(new_user_data, key=user_id, user_id=user_id)


def user_can_bid(user: Optional[User]) -> bool:
    return bool(user) and user.data.status != "blocked" and user.data.user_type == "buyer"


async def user_block(user_id: str, reason: str, now: Optional[datetime] = None) -> CasResult:
    """Block a user for good. Blocking an already blocked user is a no-op."""
    now = now or datetime.now(timezone.utc)

    def _mutate(d: UserData) -> Optional[str]:
        if d.status == "blocked":
            return "User already blocked"
        d.status = "blocked"
        d.blocked_at = now
        d.blocked_reason = reason
        return None

    return await cas_retry(User, user_id, _mutate)


async def user_grant_verified_batch(user_id: str, now: Optional[datetime] = None) -> CasResult:
    now = now or datetime.now(timezone.utc)

    def _mutate(d: UserData) -> Optional[str]:
        if d.verified_batch:
            return "User already carries the verified badge"
        d.verified_batch = True
        d.verified_batch_purchased_at = now
        return None

    return await cas_retry(User, user_id, _mutate)
