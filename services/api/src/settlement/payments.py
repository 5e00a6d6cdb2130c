"""
Payment Session Manager: Payment records plus the provider sessions behind them.

Constructed with an explicit ``PaymentConf`` and a ``PaymentProvider``. It
knows nothing about auctions or listings; what a completed or expired
payment means is decided by the ``SettlementCoordinator``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Mapping, Optional, Tuple

from conf import PaymentConf
from models.entities.couchbase.payments import (
    DeferredListing,
    Payment,
    PaymentData,
    PaymentType,
    TERMINAL_PAYMENT_STATUSES,
)
from models.operations.errors import PaymentNotFound, ProviderUnavailable
from models.operations.payments import (
    payment_create,
    payment_create_for_auction_winner,
    payment_get,
    payment_get_by_intent,
    payment_mark_cancelled,
    payment_mark_completed,
    payment_mark_expired,
    payment_mark_failed,
    payment_mark_processing,
    payment_set_session,
    payments_past_deadline,
)
from settlement.providers import PaymentProvider
from utils import log

logger = log.get_logger(__name__)


@dataclass
class Verification:
    """Result of reading a provider intent back.

    ``payment`` is the completed record (``None`` unless completed).
    ``closed`` is set when this call recorded a failure or cancellation,
    ``processing`` when it recorded that the charge is in flight.
    """

    provider_status: str
    payment: Optional[Payment] = None
    closed: Optional[Payment] = None
    processing: Optional[Payment] = None

    @property
    def record(self) -> Optional[Payment]:
        """The payment this verification changed, if any."""
        return self.payment or self.closed or self.processing


def describe(payment_type: str, is_second_bidder: bool = False, featured_duration_days: Optional[int] = None) -> str:
    if payment_type == "featured_listing":
        return f"Featured Listing Payment ({featured_duration_days} days)"
    if payment_type == "auction_winner":
        return "Auction Winner Payment" + (" (Second Bidder)" if is_second_bidder else "")
    return "Verified Batch Purchase"


class PaymentSessionManager:
    def __init__(self, conf: PaymentConf, provider: PaymentProvider):
        self.conf = conf
        self.provider = provider

    async def create_session(
        self,
        user_id: str,
        payment_type: PaymentType,
        amount: float,
        deadline: datetime,
        listing_id: Optional[str] = None,
        auction_id: Optional[str] = None,
        is_second_bidder: bool = False,
        featured_duration_days: Optional[int] = None,
        deferred_listing: Optional[DeferredListing] = None,
    ) -> Payment:
        """
        Create a pending Payment and open its provider intent.

        For auction-winner payments an existing non-terminal payment of the
        same (auction, user) is returned instead of a second one. If the
        provider call fails the new payment is marked failed and
        ``ProviderUnavailable`` is raised.
        """
        data = PaymentData(
            user_id=user_id,
            payment_type=payment_type,
            listing_id=listing_id,
            auction_id=auction_id,
            amount=round(float(amount), 2),
            currency=self.conf.currency,
            payment_deadline=deadline,
            is_second_bidder=is_second_bidder,
            featured_duration_days=featured_duration_days,
            deferred_listing=deferred_listing,
        )

        if payment_type == "auction_winner":
            payment = await payment_create_for_auction_winner(data)
            if payment.data.intent_id:
                logger.info(f"Payment {payment.id} already has a session for auction {auction_id}")
                return payment
        else:
            payment = await payment_create(data)

        try:
            intent = await self.provider.open_intent(
                payment.id,
                payment.data.amount,
                payment.data.currency,
                describe(payment_type, is_second_bidder, featured_duration_days),
            )
        except ProviderUnavailable as e:
            logger.error(f"Provider session failed for payment {payment.id} ({payment_type}): {e}")
            await payment_mark_failed(payment.id, "provider_unavailable")
            raise

        result = await payment_set_session(payment.id, self.provider.name, intent.intent_id, intent.redirect_url)
        if not result.ok:
            logger.warning(f"Could not store intent {intent.intent_id} on payment {payment.id}: {result.error}")
            return await payment_get(payment.id) or payment

        logger.info(
            f"Payment {payment.id} opened: type={payment_type} user={user_id} "
            f"amount={payment.data.amount:.2f} {payment.data.currency} intent={intent.intent_id}"
        )
        return result.item

    async def verify(
        self, intent_id: str, now: Optional[datetime] = None, payment: Optional[Payment] = None
    ) -> Verification:
        """Re-derive a payment's state from the provider. Safe to call any number of times.

        *payment* skips the lookup by intent when the caller already holds the record.
        """
        now = now or datetime.now(timezone.utc)
        if payment is None:
            payment = await payment_get_by_intent(intent_id)
        if not payment:
            raise PaymentNotFound(f"No payment for intent {intent_id}")

        if payment.data.status == "completed":
            return Verification(provider_status="completed", payment=payment)

        status = await self.provider.get_intent(intent_id)

        if status.status == "completed":
            if payment.data.status in TERMINAL_PAYMENT_STATUSES:
                logger.warning(
                    f"Provider reports intent {intent_id} completed but payment {payment.id} is "
                    f"{payment.data.status}; not applied, refund manually"
                )
                return Verification(provider_status="completed")
            result = await payment_mark_completed(payment.id, status.completed_at or now)
            if result.ok:
                logger.info(f"Payment {payment.id} completed (intent {intent_id})")
                return Verification(provider_status="completed", payment=result.item)
            fresh = await payment_get(payment.id)
            if fresh and fresh.data.status == "completed":
                return Verification(provider_status="completed", payment=fresh)
            logger.warning(f"Completion of payment {payment.id} not applied: {result.error}")
            return Verification(provider_status="completed")

        if status.status == "failed":
            result = await payment_mark_failed(payment.id, "provider_failed")
            if result.ok:
                logger.info(f"Payment {payment.id} failed at provider (intent {intent_id})")
            return Verification(provider_status="failed", closed=result.item if result.ok else None)

        if status.status == "cancelled":
            result = await payment_mark_cancelled(payment.id, now)
            if result.ok:
                logger.info(f"Payment {payment.id} cancelled at provider (intent {intent_id})")
            return Verification(provider_status="cancelled", closed=result.item if result.ok else None)

        if status.status == "processing":
            result = await payment_mark_processing(payment.id)
            if result.ok:
                logger.info(f"Payment {payment.id} processing at provider (intent {intent_id})")
            return Verification(provider_status="processing", processing=result.item if result.ok else None)

        return Verification(provider_status=status.status)

    async def handle_webhook_event(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[Verification]:
        """Verify the signature, then re-derive state through ``verify``.

        Raises ``WebhookRejected`` on a bad signature; returns ``None`` for
        events that do not concern a payment intent.
        """
        intent_id = self.provider.parse_webhook(raw_body, headers)
        if not intent_id:
            return None
        logger.info(f"Webhook received for intent {intent_id}")
        return await self.verify(intent_id)

    async def sweep_expired(
        self, now: Optional[datetime] = None
    ) -> Tuple[List[Payment], List[Verification], List[dict]]:
        """Expire active payments past their deadline.

        A payment with a provider intent is read back first: one the provider
        completed, closed or is still processing is not expired but returned
        as a verification for the coordinator to apply. Only payments the
        provider still reports as pending are expired. If the provider cannot
        be reached the payment is left for the next sweep.

        Returns the payments this call expired (it won the CAS), the
        verifications that changed a payment, and per-payment errors.
        """
        now = now or datetime.now(timezone.utc)
        expired: List[Payment] = []
        resolved: List[Verification] = []
        errors: List[dict] = []
        for payment in await payments_past_deadline(now):
            try:
                if payment.data.intent_id:
                    verification = await self.verify(payment.data.intent_id, now, payment=payment)
                    if verification.provider_status != "pending":
                        if verification.record is not None:
                            resolved.append(verification)
                        continue
                result = await payment_mark_expired(payment.id, now)
            except ProviderUnavailable as e:
                logger.warning(f"Payment {payment.id} past deadline left for the next sweep: {e}")
                errors.append({"payment_id": payment.id, "error": str(e)})
                continue
            except Exception as e:
                logger.error(f"Expiring payment {payment.id} failed", exc_info=True)
                errors.append({"payment_id": payment.id, "error": str(e)})
                continue
            if result.ok:
                logger.info(f"Payment {payment.id} expired (deadline {payment.data.payment_deadline.isoformat()})")
                expired.append(result.item)
        return expired, resolved, errors
