"""
Payment provider adapters.

The settlement code talks to one ``PaymentProvider``: open a hosted payment
intent, read its status back, and turn a webhook request into the intent id
it concerns. Provider statuses are normalized to ``pending``, ``processing``,
``completed``, ``failed`` and ``cancelled``.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping, Optional

from clients.stripe_checkout import StripeCheckoutClient, StripeCheckoutError
from clients.ziina import ZiinaClient, ZiinaClientError, verify_signature
from conf import PaymentConf
from models.operations.errors import ProviderUnavailable
from utils import log

logger = log.get_logger(__name__)


def to_subunits(amount: float) -> int:
    """Base units (AED) to integer subunits (fils), rounded half-up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class WebhookRejected(ValueError):
    """Signature mismatch or an unreadable webhook body."""
    pass


@dataclass
class ProviderIntent:
    intent_id: str
    redirect_url: Optional[str]


@dataclass
class ProviderStatus:
    status: str
    completed_at: Optional[datetime] = None


class PaymentProvider(ABC):
    name: str = ""

    @property
    @abstractmethod
    def configured(self) -> bool:
        ...

    @abstractmethod
    async def open_intent(
        self, payment_id: str, amount: float, currency: str, description: str
    ) -> ProviderIntent:
        ...

    @abstractmethod
    async def get_intent(self, intent_id: str) -> ProviderStatus:
        ...

    @abstractmethod
    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        """Return the intent id a webhook is about, ``None`` for events we ignore."""
        ...


class ZiinaProvider(PaymentProvider):
    name = "ziina"

    _STATUSES = {
        "completed": "completed",
        "failed": "failed",
        "cancelled": "cancelled",
        "canceled": "cancelled",
        "pending": "pending",
        "requires_user_action": "processing",
        "requires_payment_instrument": "pending",
    }

    def __init__(self, client: ZiinaClient, frontend_url: str, webhook_secret: Optional[str] = None):
        self.client = client
        self.frontend_url = frontend_url.rstrip("/")
        self.webhook_secret = webhook_secret

    @property
    def configured(self) -> bool:
        return self.client.configured

    def _url(self, outcome: str, payment_id: str) -> str:
        # Ziina substitutes {PAYMENT_INTENT_ID} on redirect
        return f"{self.frontend_url}/payment/{outcome}?payment_id={payment_id}&pi={{PAYMENT_INTENT_ID}}"

    async def open_intent(self, payment_id: str, amount: float, currency: str, description: str) -> ProviderIntent:
        if not self.configured:
            raise ProviderUnavailable("Ziina is not configured. Set ZIINA_ACCESS_TOKEN.")
        try:
            data = await self.client.create_payment_intent(
                amount=to_subunits(amount),
                currency_code=currency,
                message=description,
                success_url=self._url("success", payment_id),
                cancel_url=self._url("cancel", payment_id),
                failure_url=self._url("failure", payment_id),
            )
        except ZiinaClientError as e:
            raise ProviderUnavailable(str(e)) from e
        return ProviderIntent(intent_id=data["id"], redirect_url=data.get("redirect_url"))

    async def get_intent(self, intent_id: str) -> ProviderStatus:
        if not self.configured:
            raise ProviderUnavailable("Ziina is not configured. Set ZIINA_ACCESS_TOKEN.")
        try:
            data = await self.client.get_payment_intent(intent_id)
        except ZiinaClientError as e:
            raise ProviderUnavailable(str(e)) from e

        raw_status = str(data.get("status", "")).lower()
        status = self._STATUSES.get(raw_status, "pending")
        completed_at = None
        if status == "completed" and data.get("completed_at"):
            try:
                completed_at = datetime.fromisoformat(str(data["completed_at"]).replace("Z", "+00:00"))
            except ValueError:
                logger.warning(f"Unparseable completed_at '{data['completed_at']}' on intent {intent_id}")
        return ProviderStatus(status=status, completed_at=completed_at)

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        if self.webhook_secret:
            signature = headers.get("x-hmac-signature")
            if not verify_signature(raw_body, signature, self.webhook_secret):
                raise WebhookRejected("Invalid signature")

        event = _json_body(raw_body)
        if event.get("type") != "payment_intent.status.updated":
            logger.info(f"Ignoring Ziina event type {event.get('type')}")
            return None
        data = event.get("data") or {}
        return data.get("id")


class StripeProvider(PaymentProvider):
    name = "stripe"

    _EVENTS = (
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
        "checkout.session.async_payment_failed",
        "checkout.session.expired",
    )

    def __init__(self, client: StripeCheckoutClient, frontend_url: str):
        self.client = client
        self.frontend_url = frontend_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return self.client.configured

    async def open_intent(self, payment_id: str, amount: float, currency: str, description: str) -> ProviderIntent:
        if not self.configured:
            raise ProviderUnavailable("Stripe is not configured. Set STRIPE_SECRET_KEY.")
        try:
            session = await self.client.create_session(
                amount=to_subunits(amount),
                currency=currency,
                product_name=description,
                success_url=f"{self.frontend_url}/payment/success?payment_id={payment_id}&pi={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.frontend_url}/payment/cancel?payment_id={payment_id}",
                metadata={"payment_id": payment_id},
            )
        except StripeCheckoutError as e:
            raise ProviderUnavailable(str(e)) from e
        return ProviderIntent(intent_id=session["id"], redirect_url=session.get("url"))

    async def get_intent(self, intent_id: str) -> ProviderStatus:
        if not self.configured:
            raise ProviderUnavailable("Stripe is not configured. Set STRIPE_SECRET_KEY.")
        try:
            session = await self.client.retrieve_session(intent_id)
        except StripeCheckoutError as e:
            raise ProviderUnavailable(str(e)) from e

        if session.get("status") == "expired":
            return ProviderStatus(status="cancelled")
        if session.get("status") == "complete":
            if session.get("payment_status") in ("paid", "no_payment_required"):
                return ProviderStatus(status="completed")
            return ProviderStatus(status="processing")
        return ProviderStatus(status="pending")

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        if self.client.webhook_secret:
            try:
                event = self.client.construct_event(raw_body, headers.get("stripe-signature"))
            except ValueError as e:
                raise WebhookRejected(str(e)) from e
        else:
            event = _json_body(raw_body)

        if event.get("type") not in self._EVENTS:
            logger.info(f"Ignoring Stripe event type {event.get('type')}")
            return None
        obj = (event.get("data") or {}).get("object") or {}
        return obj.get("id")


def _json_body(raw_body: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(raw_body or b"{}")
    except ValueError as e:
        raise WebhookRejected("Webhook body is not JSON") from e
    if not isinstance(event, dict):
        raise WebhookRejected("Webhook body is not a JSON object")
    return event


def build_provider(payment_conf: PaymentConf) -> PaymentProvider:
    if payment_conf.provider == "stripe":
        client = StripeCheckoutClient(
            secret_key=payment_conf.stripe_secret_key,
            webhook_secret=payment_conf.stripe_webhook_secret,
        )
        provider: PaymentProvider = StripeProvider(client, payment_conf.frontend_url)
    else:
        client = ZiinaClient(
            access_token=payment_conf.ziina_access_token,
            api_url=payment_conf.ziina_api_url,
            test_mode=payment_conf.ziina_test_mode,
        )
        provider = ZiinaProvider(client, payment_conf.frontend_url, payment_conf.ziina_webhook_secret)

    if not provider.configured:
        logger.warning(f"Payment provider '{provider.name}' is not configured; payment sessions will fail")
    return provider
