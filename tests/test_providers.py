import hashlib
import hmac
import json

import pytest

from clients.stripe_checkout import StripeCheckoutClient
from clients.ziina import ZiinaAPIError, ZiinaClient, verify_signature
from models.operations.errors import ProviderUnavailable
from settlement.providers import StripeProvider, WebhookRejected, ZiinaProvider, to_subunits

SECRET = "whsec_test"


class StubZiinaClient(ZiinaClient):
    def __init__(self, intent=None, fail=False):
        super().__init__(access_token="token", api_url="https://api.example/api")
        self.intent = intent or {}
        self.fail = fail
        self.created = []

    async def create_payment_intent(self, **kwargs):
        if self.fail:
            raise ZiinaAPIError("boom", status=500)
        self.created.append(kwargs)
        return {"id": "pi_123", "redirect_url": "https://pay.ziina.example/pi_123"}

    async def get_payment_intent(self, intent_id):
        if self.fail:
            raise ZiinaAPIError("boom", status=500)
        return self.intent


class StubStripeClient(StripeCheckoutClient):
    def __init__(self, session=None, webhook_secret=None):
        super().__init__(secret_key="sk_test", webhook_secret=webhook_secret)
        self.session = session or {}

    async def retrieve_session(self, session_id):
        return self.session


def _sign(body: bytes) -> str:
    return hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()


@pytest.mark.parametrize("amount,expected", [
    (150, 15000),
    (150.5, 15050),
    (0.01, 1),
    (10.005, 1001),
    (99.99, 9999),
])
def test_to_subunits(amount, expected):
    assert to_subunits(amount) == expected


def test_verify_signature():
    body = b'{"type":"payment_intent.status.updated"}'
    assert verify_signature(body, _sign(body), SECRET)
    assert verify_signature(body, _sign(body).upper(), SECRET)
    assert not verify_signature(body, _sign(b"other"), SECRET)
    assert not verify_signature(body, None, SECRET)


@pytest.mark.asyncio
async def test_ziina_intent_uses_fils_and_return_urls():
    client = StubZiinaClient()
    provider = ZiinaProvider(client, "https://shop.example/")

    intent = await provider.open_intent("pay-1", 150.25, "AED", "Auction Winner Payment")

    assert intent.intent_id == "pi_123"
    assert intent.redirect_url == "https://pay.ziina.example/pi_123"
    sent = client.created[0]
    assert sent["amount"] == 15025
    assert sent["currency_code"] == "AED"
    assert sent["success_url"] == "https://shop.example/payment/success?payment_id=pay-1&pi={PAYMENT_INTENT_ID}"
    assert sent["cancel_url"] == "https://shop.example/payment/cancel?payment_id=pay-1&pi={PAYMENT_INTENT_ID}"
    assert sent["failure_url"] == "https://shop.example/payment/failure?payment_id=pay-1&pi={PAYMENT_INTENT_ID}"


@pytest.mark.asyncio
async def test_ziina_errors_become_provider_unavailable():
    provider = ZiinaProvider(StubZiinaClient(fail=True), "https://shop.example")
    with pytest.raises(ProviderUnavailable):
        await provider.open_intent("pay-1", 10, "AED", "x")
    with pytest.raises(ProviderUnavailable):
        await provider.get_intent("pi_123")


@pytest.mark.asyncio
async def test_unconfigured_ziina_is_unavailable():
    provider = ZiinaProvider(ZiinaClient(access_token=None), "https://shop.example")
    assert not provider.configured
    with pytest.raises(ProviderUnavailable):
        await provider.open_intent("pay-1", 10, "AED", "x")


@pytest.mark.asyncio
@pytest.mark.parametrize("raw,expected", [
    ("completed", "completed"),
    ("failed", "failed"),
    ("canceled", "cancelled"),
    ("pending", "pending"),
    ("requires_payment_instrument", "pending"),
    ("requires_user_action", "processing"),
    ("something_new", "pending"),
])
async def test_ziina_status_mapping(raw, expected):
    provider = ZiinaProvider(StubZiinaClient(intent={"id": "pi_123", "status": raw}), "https://shop.example")
    status = await provider.get_intent("pi_123")
    assert status.status == expected


@pytest.mark.asyncio
async def test_ziina_completed_at_is_parsed():
    intent = {"id": "pi_123", "status": "completed", "completed_at": "2026-03-01T12:00:00Z"}
    provider = ZiinaProvider(StubZiinaClient(intent=intent), "https://shop.example")
    status = await provider.get_intent("pi_123")
    assert status.completed_at.isoformat() == "2026-03-01T12:00:00+00:00"


def test_ziina_webhook_signature_is_checked():
    provider = ZiinaProvider(StubZiinaClient(), "https://shop.example", webhook_secret=SECRET)
    body = json.dumps({"type": "payment_intent.status.updated", "data": {"id": "pi_123"}}).encode()

    assert provider.parse_webhook(body, {"x-hmac-signature": _sign(body)}) == "pi_123"
    with pytest.raises(WebhookRejected):
        provider.parse_webhook(body, {"x-hmac-signature": "deadbeef"})
    with pytest.raises(WebhookRejected):
        provider.parse_webhook(body, {})


def test_ziina_webhook_ignores_other_events_and_rejects_garbage():
    provider = ZiinaProvider(StubZiinaClient(), "https://shop.example")
    other = json.dumps({"type": "refund.status.updated", "data": {"id": "r_1"}}).encode()

    assert provider.parse_webhook(other, {}) is None
    with pytest.raises(WebhookRejected):
        provider.parse_webhook(b"not json", {})
    with pytest.raises(WebhookRejected):
        provider.parse_webhook(b"[1, 2]", {})


@pytest.mark.asyncio
@pytest.mark.parametrize("session,expected", [
    ({"status": "complete", "payment_status": "paid"}, "completed"),
    ({"status": "complete", "payment_status": "unpaid"}, "processing"),
    ({"status": "expired", "payment_status": "unpaid"}, "cancelled"),
    ({"status": "open", "payment_status": "unpaid"}, "pending"),
])
async def test_stripe_status_mapping(session, expected):
    provider = StripeProvider(StubStripeClient(session=session), "https://shop.example")
    assert (await provider.get_intent("cs_1")).status == expected


def test_stripe_webhook_without_secret_reads_the_session_id():
    provider = StripeProvider(StubStripeClient(), "https://shop.example")
    body = json.dumps({"type": "checkout.session.completed", "data": {"object": {"id": "cs_1"}}}).encode()
    ignored = json.dumps({"type": "customer.created", "data": {"object": {"id": "cus_1"}}}).encode()

    assert provider.parse_webhook(body, {}) == "cs_1"
    assert provider.parse_webhook(ignored, {}) is None
