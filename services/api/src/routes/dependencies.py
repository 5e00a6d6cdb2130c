import hmac
from typing import Optional, Union

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from models.operations.errors import MarketplaceError, ProviderUnavailable
from models.operations.users import user_create_if_not_exists_and_get
from utils import log

logger = log.get_logger(__name__)

security = HTTPBearer()


def _claim_email(email) -> Optional[str]:
    # Some issuers send email as a list of strings or {"value": ...} objects
    if isinstance(email, list):
        if not email:
            return None
        item = email[0]
        return item.get("value") if isinstance(item, dict) else str(item)
    return email


async def current_user_get(request: Request, token: HTTPAuthorizationCredentials = Depends(security)):
    if not hasattr(request.app.state, "auth_client"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No auth_client")

    payload = request.app.state.auth_client.decode_jwt(token.credentials)
    if not payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")

    email = _claim_email(payload.get("email"))
    payload["db_user"] = await user_create_if_not_exists_and_get(user_id, str(email) if email else "")
    return payload


async def require_authenticated(user: dict = Depends(current_user_get)):
    return user


def is_admin(user: dict) -> bool:
    roles = user.get("roles", [])
    if isinstance(roles, str):
        roles = [roles]
    db_user = user.get("db_user")
    return "admin" in roles or (db_user is not None and db_user.data.role == "admin")


async def require_admin(user: dict = Depends(current_user_get)):
    """
    Dependency to ensure the user has the 'admin' role.
    """
    if not is_admin(user):
        logger.warning(f"User {user.get('sub')} attempted admin access without 'admin' role")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return user


async def require_seller(user: dict = Depends(current_user_get)):
    db_user = user.get("db_user")
    if db_user is None or db_user.data.user_type != "seller":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Seller account required")
    if db_user.data.status == "blocked":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is blocked")
    return user


async def require_cron_key(request: Request, x_api_key: Optional[str] = Header(default=None)):
    """Shared-secret guard for sweep triggers (``x-api-key`` must equal CRON_API_KEY)."""
    expected = request.app.state.sweeper_conf.cron_api_key
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="CRON_API_KEY not configured")
    if not x_api_key or not hmac.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def get_coordinator(request: Request):
    return request.app.state.coordinator


def get_sweeper(request: Request):
    return request.app.state.sweeper


def to_http_exception(e: Union[MarketplaceError, ProviderUnavailable]) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))
