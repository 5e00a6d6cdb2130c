import pytest

from clients.mailer import MailerClient, MailerError
from settlement import notifications
from settlement.notifications import EmailNotifier, NotificationDispatcher, Notifier, render

ALL_KINDS = [
    notifications.BID_PLACED,
    notifications.AUCTION_WON,
    notifications.SECOND_BIDDER_PROMOTED,
    notifications.PAYMENT_REMINDER,
    notifications.FEATURED_PAYMENT_LINK,
    notifications.FEATURED_PAYMENT_FAILED,
    notifications.FEATURED_INVOICE,
    notifications.VERIFIED_BATCH_INVOICE,
    notifications.ACCOUNT_BLOCKED,
]


class StubMailer(MailerClient):
    def __init__(self, fail=False):
        super().__init__(host="smtp.example", port=587, username=None, password=None, sender="shop@example.com")
        self.fail = fail
        self.outbox = []

    async def send(self, to, subject, text, html=None):
        if self.fail:
            raise MailerError("smtp down")
        self.outbox.append((to, subject, text))
        return True


@pytest.mark.parametrize("kind", ALL_KINDS)
def test_every_kind_renders(kind):
    subject, body = render(
        kind,
        "Bob",
        {"title": "iPhone 15", "amount": 150, "currency": "AED", "payment_link": "https://pay.example/1"},
        "https://shop.example",
    )
    assert subject
    assert body.startswith("Hi Bob,")


def test_auction_won_carries_link_and_price():
    _, body = render(
        notifications.AUCTION_WON,
        "",
        {"title": "iPhone 15", "amount": 150, "payment_link": "https://pay.example/1", "deadline": "2026-03-03"},
        "https://shop.example",
    )
    assert "AED 150.00" in body
    assert "https://pay.example/1" in body
    assert "2026-03-03" in body


def test_unknown_kind_is_an_error():
    with pytest.raises(ValueError):
        render("carrier_pigeon", "", {}, "https://shop.example")


@pytest.mark.asyncio
async def test_email_notifier_mails_the_user(make_user):
    await make_user("bob")
    mailer = StubMailer()

    await EmailNotifier(mailer, "https://shop.example").notify(
        notifications.PAYMENT_REMINDER, "bob", {"amount": 150, "hours_remaining": 12}
    )

    (to, subject, _), = mailer.outbox
    assert to == "bob@example.com"
    assert "12 hours" in subject


@pytest.mark.asyncio
async def test_email_notifier_skips_unknown_users(store):
    mailer = StubMailer()
    await EmailNotifier(mailer, "https://shop.example").notify(notifications.ACCOUNT_BLOCKED, "ghost", {})
    assert mailer.outbox == []


@pytest.mark.asyncio
async def test_dispatcher_swallows_delivery_failures(make_user):
    await make_user("bob")
    dispatcher = NotificationDispatcher(EmailNotifier(StubMailer(fail=True), "https://shop.example"))

    dispatcher.send(notifications.ACCOUNT_BLOCKED, "bob", {})
    await dispatcher.drain()


@pytest.mark.asyncio
async def test_dispatcher_survives_unexpected_errors():
    class _Exploding(Notifier):
        async def notify(self, kind, recipient, payload):
            raise RuntimeError("bug")

    dispatcher = NotificationDispatcher(_Exploding())
    dispatcher.send(notifications.BID_PLACED, "seller", {})
    await dispatcher.drain()
