"""Ziina Client: hosted payment intents over the Ziina REST API.

Amounts are sent in fils (1 AED = 100 fils). The caller does the conversion;
this client only moves JSON.

Usage::

    client = ZiinaClient(access_token="...", test_mode=True)
    intent = await client.create_payment_intent(
        amount=15000,
        currency_code="AED",
        message="Auction Winner Payment",
        success_url="https://.../payment/success?pi={PAYMENT_INTENT_ID}",
        cancel_url="...",
        failure_url="...",
    )
    intent["id"], intent["redirect_url"]
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from clients import http
from clients.ziina.exceptions import ZiinaAPIError, ZiinaNotConfiguredError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api-v2.ziina.com/api"


class ZiinaClient:
    def __init__(
        self,
        access_token: Optional[str],
        api_url: str = DEFAULT_API_URL,
        test_mode: bool = False,
        timeout: float = 10.0,
    ) -> None:
        self.access_token = access_token
        self.api_url = api_url.rstrip("/")
        self.test_mode = test_mode
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.access_token)

    def _headers(self) -> Dict[str, str]:
        if not self.access_token:
            raise ZiinaNotConfiguredError("Ziina is not configured (ZIINA_ACCESS_TOKEN is empty)")
        return {"Authorization": f"Bearer {self.access_token}"}

    async def create_payment_intent(
        self,
        amount: int,
        currency_code: str,
        message: str,
        success_url: str,
        cancel_url: str,
        failure_url: str,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "amount": amount,
            "currency_code": currency_code,
            "message": message,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "failure_url": failure_url,
        }
        if self.test_mode:
            body["test"] = True
            logger.info("Ziina test mode enabled, intent will be created in test mode")

        try:
            data = await http.request(
                "POST",
                f"{self.api_url}/payment_intent",
                headers=self._headers(),
                json_data=body,
                timeout=self.timeout,
            )
        except http.HttpError as e:
            raise ZiinaAPIError(f"Ziina create intent failed: {e} {e.body}", status=e.status) from e

        if not data or "id" not in data:
            raise ZiinaAPIError("Ziina create intent returned no intent id")
        return data

    async def get_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        try:
            data = await http.request(
                "GET",
                f"{self.api_url}/payment_intent/{intent_id}",
                headers=self._headers(),
                timeout=self.timeout,
            )
        except http.HttpError as e:
            raise ZiinaAPIError(f"Ziina fetch intent {intent_id} failed: {e} {e.body}", status=e.status) from e
        if not data:
            raise ZiinaAPIError(f"Ziina returned an empty body for intent {intent_id}")
        return data


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Check the ``X-Hmac-Signature`` header: hex HMAC-SHA256 of the raw body."""
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())
