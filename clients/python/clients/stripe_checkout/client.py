"""Stripe Checkout Sessions as a hosted payment page.

The Stripe SDK is synchronous; every call runs in the default executor so the
event loop is never blocked.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Dict, Optional

import stripe

logger = logging.getLogger(__name__)


class StripeCheckoutError(Exception):
    """Raised when Stripe is unconfigured or a Stripe call fails."""
    pass


class StripeCheckoutClient:
    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str] = None) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _stripe(self):
        if not self.secret_key:
            raise StripeCheckoutError("Stripe is not configured (STRIPE_SECRET_KEY is empty)")
        stripe.api_key = self.secret_key
        return stripe

    async def _run(self, fn, *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args, **kwargs))
        except stripe.error.StripeError as e:
            raise StripeCheckoutError(f"Stripe call failed: {e}") from e

    async def create_session(
        self,
        amount: int,
        currency: str,
        product_name: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        s = self._stripe()
        session = await self._run(
            s.checkout.Session.create,
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": amount,
                    "product_data": {"name": product_name},
                },
                "quantity": 1,
            }],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata or {},
        )
        return {"id": session.id, "url": session.url, "status": session.status}

    async def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        s = self._stripe()
        session = await self._run(s.checkout.Session.retrieve, session_id)
        return {
            "id": session.id,
            "status": session.status,
            "payment_status": session.payment_status,
        }

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and return the event as a dict.

        Raises ``ValueError`` on a bad signature or payload.
        """
        s = self._stripe()
        try:
            event = s.Webhook.construct_event(payload, sig_header or "", self.webhook_secret)
        except stripe.error.SignatureVerificationError as e:
            raise ValueError("Invalid Stripe signature") from e
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)
