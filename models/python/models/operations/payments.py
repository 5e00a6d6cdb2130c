"""
Payment records and their CAS-guarded status transitions.

Terminal statuses (completed, failed, refunded, expired) are never left. The
completion side effects are tracked separately by ``settled_at`` so they can
be applied exactly once even when the status write and the side effects are
interrupted in between.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from clients.couchbase import CasResult, DocumentExistsException, cas_retry, where
from models.entities.couchbase.payments import (
    ACTIVE_PAYMENT_STATUSES,
    Payment,
    PaymentData,
)
from models.operations.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)


def auction_payment_key(auction_id: str, user_id: str, attempt: int) -> str:
    return f"{auction_id}::{user_id}::{attempt}"


async def payment_get(payment_id: str) -> Optional[Payment]:
    return await Payment.get(payment_id)


async def payment_get_by_intent(intent_id: str) -> Optional[Payment]:
    """Consistent lookup: a webhook can arrive right after the intent was stored."""
    return await Payment.find_one([where("intent_id", "=", intent_id)], consistent=True)


async def payment_create(data: PaymentData, key: Optional[str] = None) -> Payment:
    data.amount = round(float(data.amount), 2)
    return await Payment.create(data, key=key, user_id=data.user_id)


async def payments_for_auction(auction_id: str, user_id: str) -> List[Payment]:
    return await Payment.find([
        where("auction_id", "=", auction_id),
        where("user_id", "=", user_id),
        where("payment_type", "=", "auction_winner"),
    ], consistent=True)


async def payment_create_for_auction_winner(data: PaymentData) -> Payment:
    """
    Create the auction-winner payment of ``(auction, user)``.

    The key is ``<auction>::<user>::<attempt>`` where attempt counts earlier
    payments of the pair, so two concurrent creators collide on the insert and
    the loser gets the payment the winner wrote.
    """
    existing = await payments_for_auction(data.auction_id, data.user_id)
    for payment in existing:
        if payment.data.status in ACTIVE_PAYMENT_STATUSES:
            return payment

    key = None
    for attempt in range(len(existing), len(existing) + 5):
        key = auction_payment_key(data.auction_id, data.user_id, attempt)
        try:
            return await payment_create(data, key=key)
        except DocumentExistsException:
            payment = await Payment.get(key)
            if payment is not None and payment.data.status in ACTIVE_PAYMENT_STATUSES:
                logger.info(f"Payment {key} created concurrently, reusing it")
                return payment
            # taken by an older, finished attempt
    raise ConcurrencyConflict(f"No free payment key for auction {data.auction_id} user {data.user_id} after {key}")


async def payment_find_active_for_auction(auction_id: str, user_id: str) -> Optional[Payment]:
    for payment in await payments_for_auction(auction_id, user_id):
        if payment.data.status in ACTIVE_PAYMENT_STATUSES:
            return payment
    return None


async def payments_past_deadline(now: datetime) -> List[Payment]:
    """Active (pending or processing) payments whose deadline has passed."""
    return await Payment.find([
        where("status", "IN", list(ACTIVE_PAYMENT_STATUSES)),
        where("payment_deadline", "<", now),
    ])


async def payments_expiring_within(now: datetime, hours: int) -> List[Payment]:
    """Pending auction-winner payments whose deadline falls in the next *hours*."""
    return await Payment.find([
        where("payment_type", "=", "auction_winner"),
        where("status", "=", "pending"),
        where("payment_deadline", ">", now),
        where("payment_deadline", "<=", now + timedelta(hours=hours)),
    ])


async def payments_completed_unsettled() -> List[Payment]:
    return await Payment.find([
        where("status", "=", "completed"),
        where("settled_at", "IS NULL"),
    ])


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

async def payment_set_session(
    payment_id: str, provider: str, intent_id: str, payment_link: Optional[str]
) -> CasResult:
    def _mutate(d: PaymentData) -> Optional[str]:
        if d.status not in ACTIVE_PAYMENT_STATUSES:
            return f"Payment is {d.status}"
        d.provider = provider
        d.intent_id = intent_id
        d.payment_link = payment_link
        return None

    return await cas_retry(Payment, payment_id, _mutate)


async def payment_mark_completed(payment_id: str, now: Optional[datetime] = None) -> CasResult:
    now = now or datetime.now(timezone.utc)

    def _mutate(d: PaymentData) -> Optional[str]:
        if d.status not in ACTIVE_PAYMENT_STATUSES:
            return f"Payment is {d.status}"
        d.status = "completed"
        d.paid_at = now
        return None

    return await cas_retry(Payment, payment_id, _mutate)


async def payment_mark_processing(payment_id: str) -> CasResult:
    """``pending -> processing`` while the provider is still settling the charge."""

    def _mutate(d: PaymentData) -> Optional[str]:
        if d.status != "pending":
            return f"Payment is {d.status}"
        d.status = "processing"
        return None

    return await cas_retry(Payment, payment_id, _mutate)


async def payment_mark_expired(payment_id: str, now: Optional[datetime] = None) -> CasResult:
    """Active payment -> expired. Only the writer that wins this CAS runs the fallback."""
    now = now or datetime.now(timezone.utc)

    def _mutate(d: PaymentData) -> Optional[str]:
        if d.status not in ACTIVE_PAYMENT_STATUSES:
            return f"Payment is {d.status}"
        d.status = "expired"
        d.expired_at = now
        return None

    return await cas_retry(Payment, payment_id, _mutate)


async def payment_mark_cancelled(payment_id: str, now: Optional[datetime] = None) -> CasResult:
    """A provider-side cancellation ends the payment as expired."""
    now = now or datetime.now(timezone.utc)

    def _mutate(d: PaymentData) -> Optional[str]:
        if d.status not in ACTIVE_PAYMENT_STATUSES:
            return f"Payment is {d.status}"
        d.status = "expired"
        d.expired_at = now
        d.failure_reason = "cancelled"
        return None

    return await cas_retry(Payment, payment_id, _mutate)


async def payment_mark_failed(payment_id: str, reason: str) -> CasResult:
    def _mutate(d: PaymentData) -> Optional[str]:
        if d.status not in ACTIVE_PAYMENT_STATUSES:
            return f"Payment is {d.status}"
        d.status = "failed"
        d.failure_reason = reason
        return None

    return await cas_retry(Payment, payment_id, _mutate)


async def payment_mark_settled(payment_id: str, now: Optional[datetime] = None) -> CasResult:
    now = now or datetime.now(timezone.utc)

    def _mutate(d: PaymentData) -> Optional[str]:
        if d.status != "completed":
            return f"Payment is {d.status}"
        if d.settled_at is not None:
            return "Payment already settled"
        d.settled_at = now
        return None

    return await cas_retry(Payment, payment_id, _mutate)


async def payment_clear_deferred_listing(payment_id: str, listing_id: str) -> CasResult:
    """Drop the draft once it became *listing_id*; applies only while the draft is still there."""

    def _mutate(d: PaymentData) -> Optional[str]:
        if d.deferred_listing is None:
            return "Deferred listing already materialized"
        d.deferred_listing = None
        d.listing_id = listing_id
        return None

    return await cas_retry(Payment, payment_id, _mutate)


async def payment_record_reminder(payment_id: str, hours: int) -> CasResult:
    def _mutate(d: PaymentData) -> Optional[str]:
        if d.status != "pending":
            return f"Payment is {d.status}"
        if hours in d.reminders_sent:
            return "Reminder already sent"
        d.reminders_sent = sorted(d.reminders_sent + [hours], reverse=True)
        return None

    return await cas_retry(Payment, payment_id, _mutate)
