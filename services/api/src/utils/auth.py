"""OIDC bearer token verification against the issuer's JWKS."""

import time
from typing import Any, Dict, Optional

import httpx
from jose import JWTError, jwt
from pydantic import BaseModel

from utils import log

logger = log.get_logger(__name__)


class AuthClientConfig(BaseModel):
    jwk_url: Optional[str] = None
    audience: Optional[str] = None
    issuer: Optional[str] = None
    algorithms: list[str] = ["RS256"]
    jwks_ttl_seconds: int = 3600


class AuthClient:
    def __init__(self, config: AuthClientConfig):
        self.config = config
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_fetched_at = 0.0

    def _get_jwks(self, force: bool = False) -> Dict[str, Any]:
        stale = time.monotonic() - self._jwks_fetched_at > self.config.jwks_ttl_seconds
        if self._jwks is None or stale or force:
            if not self.config.jwk_url:
                raise ValueError("AUTH_OIDC_JWK_URL is not configured")
            response = httpx.get(self.config.jwk_url, timeout=10.0)
            response.raise_for_status()
            self._jwks = response.json()
            self._jwks_fetched_at = time.monotonic()
        return self._jwks

    def decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the verified claims, or ``None`` if the token is invalid."""
        options = {"verify_aud": bool(self.config.audience)}
        try:
            jwks = self._get_jwks()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Could not load JWKS: {e}")
            return None

        for attempt in range(2):
            try:
                return jwt.decode(
                    token,
                    jwks,
                    algorithms=self.config.algorithms,
                    audience=self.config.audience,
                    issuer=self.config.issuer,
                    options=options,
                )
            except JWTError as e:
                # an unknown kid may mean the issuer rotated keys
                if attempt == 0 and "kid" in str(e).lower():
                    try:
                        jwks = self._get_jwks(force=True)
                    except httpx.HTTPError:
                        return None
                    continue
                logger.info(f"Rejected token: {e}")
                return None
        return None
