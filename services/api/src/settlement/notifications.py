"""
Notification sink for settlement events.

``notify(kind, recipient, payload)`` is the whole contract; *recipient* is a
user id. ``NotificationDispatcher`` runs each notification as a background
task so a slow or failing mail server never blocks or fails a transition.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Set, Tuple

from clients.mailer import MailerClient, MailerError
from conf import NotificationConf
from models.operations.users import user_get
from utils import log

logger = log.get_logger(__name__)

BID_PLACED = "bid_placed"
AUCTION_WON = "auction_won"
SECOND_BIDDER_PROMOTED = "second_bidder_promoted"
PAYMENT_REMINDER = "payment_reminder"
FEATURED_PAYMENT_LINK = "featured_payment_link"
FEATURED_PAYMENT_FAILED = "featured_payment_failed"
FEATURED_INVOICE = "featured_invoice"
VERIFIED_BATCH_INVOICE = "verified_batch_invoice"
ACCOUNT_BLOCKED = "account_blocked"


class Notifier(ABC):
    @abstractmethod
    async def notify(self, kind: str, recipient: str, payload: Dict[str, Any]) -> None:
        ...


def _money(payload: Dict[str, Any]) -> str:
    return f"{payload.get('currency', 'AED')} {float(payload.get('amount', 0)):.2f}"


def render(kind: str, name: str, payload: Dict[str, Any], frontend_url: str) -> Tuple[str, str]:
    """Subject and plain-text body for *kind*."""
    title = payload.get("title") or "your item"
    link = payload.get("payment_link") or ""
    greeting = f"Hi {name}," if name else "Hi,"

    if kind == BID_PLACED:
        return (
            f"New Bid on Your Auction: {title}",
            f"{greeting}\n\nA new bid of {_money(payload)} was placed on {title}.\n"
            f"{frontend_url}/auctions/{payload.get('auction_id', '')}\n",
        )
    if kind == AUCTION_WON:
        return (
            f"You won the auction: {title}",
            f"{greeting}\n\nYou won {title} at {_money(payload)}.\n"
            f"Complete your payment before {payload.get('deadline')}:\n{link}\n\n"
            "Accounts that do not pay before the deadline are blocked permanently.\n",
        )
    if kind == SECOND_BIDDER_PROMOTED:
        return (
            f"The auction for {title} is now yours",
            f"{greeting}\n\nThe original winner did not pay, so {title} is offered to you at "
            f"{_money(payload)}.\nComplete your payment before {payload.get('deadline')}:\n{link}\n",
        )
    if kind == PAYMENT_REMINDER:
        return (
            f"Payment reminder: {payload.get('hours_remaining')} hours left",
            f"{greeting}\n\nYour payment of {_money(payload)} for {title} is due in "
            f"{payload.get('hours_remaining')} hours.\n{link}\n",
        )
    if kind == FEATURED_PAYMENT_LINK:
        return (
            f"Feature your listing: {title}",
            f"{greeting}\n\nComplete the payment to feature {title}:\n{link}\n",
        )
    if kind == FEATURED_PAYMENT_FAILED:
        return (
            f"Payment failed for {title}",
            f"{greeting}\n\nThe payment of {_money(payload)} to feature {title} for "
            f"{payload.get('duration_days')} days did not go through. Your listing was not created.\n",
        )
    if kind == FEATURED_INVOICE:
        return (
            f"Invoice {payload.get('payment_id')}: featured listing",
            f"{greeting}\n\nThank you for your payment of {_money(payload)}.\n"
            f"{title} is featured for {payload.get('duration_days')} days, until {payload.get('featured_until')}.\n"
            f"Paid at: {payload.get('paid_at')}\n",
        )
    if kind == VERIFIED_BATCH_INVOICE:
        return (
            f"Invoice {payload.get('payment_id')}: verified badge",
            f"{greeting}\n\nThank you for your payment of {_money(payload)}.\n"
            f"Your account now carries the verified badge.\nPaid at: {payload.get('paid_at')}\n",
        )
    if kind == ACCOUNT_BLOCKED:
        return (
            "Your account has been blocked",
            f"{greeting}\n\nYour account was blocked because the payment for {title} was not "
            "completed before its deadline.\n",
        )
    raise ValueError(f"Unknown notification kind '{kind}'")


class EmailNotifier(Notifier):
    def __init__(self, mailer: MailerClient, frontend_url: str):
        self.mailer = mailer
        self.frontend_url = frontend_url

    async def notify(self, kind: str, recipient: str, payload: Dict[str, Any]) -> None:
        user = await user_get(recipient)
        if not user or not user.data.email:
            logger.warning(f"No email address for user {recipient}, skipping {kind}")
            return
        subject, body = render(kind, user.data.name or "", payload, self.frontend_url)
        sent = await self.mailer.send(user.data.email, subject, body)
        if sent:
            logger.info(f"Sent {kind} email to user {recipient}")


class NotificationDispatcher:
    """Fire-and-forget wrapper; failures are logged, never raised."""

    def __init__(self, notifier: Notifier):
        self.notifier = notifier
        self._tasks: Set[asyncio.Task] = set()

    def send(self, kind: str, recipient: str, payload: Dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self._run(kind, recipient, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, kind: str, recipient: str, payload: Dict[str, Any]) -> None:
        try:
            await self.notifier.notify(kind, recipient, payload)
        except (MailerError, ValueError, OSError) as e:
            logger.error(f"Notification {kind} to user {recipient} failed: {e}")
        except Exception:
            logger.error(f"Notification {kind} to user {recipient} failed", exc_info=True)

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_notifier(notification_conf: NotificationConf) -> Notifier:
    mailer = MailerClient(
        host=notification_conf.smtp_host,
        port=notification_conf.smtp_port,
        username=notification_conf.smtp_user,
        password=notification_conf.smtp_password,
        sender=notification_conf.smtp_from,
    )
    if not mailer.configured:
        logger.warning("SMTP is not configured; notifications are only logged")
    return EmailNotifier(mailer, notification_conf.frontend_url)
