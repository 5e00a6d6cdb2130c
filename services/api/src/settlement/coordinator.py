"""
Settlement Coordinator: hand-off between the auction state machine and the
Payment Session Manager.

Every entry point here is idempotent. Completion side effects are applied
before ``settled_at`` is stamped on the payment, so an interrupted run is
finished by the next verification or sweep; expiry fallbacks only run for the
caller that won the ``pending -> expired`` CAS.
"""

from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

from conf import PaymentConf
from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.listings import Listing, ListingData
from models.entities.couchbase.payments import AuctionTerms, DeferredListing, Payment
from models.operations.auctions import (
    assign_winner,
    auction_create_with_listing,
    auction_get,
    clear_processing,
    derive_status,
    mark_ended,
    mark_paid,
    mark_payment_failed,
    promote_second_bidder,
    set_payment_status,
    validate_auction_terms,
)
from models.operations.errors import (
    AuctionNotFound,
    InvalidRequest,
    ListingNotFound,
    NotAllowed,
    PaymentConflict,
    PaymentNotFound,
    ProviderUnavailable,
)
from models.operations.listings import listing_create, listing_get, listing_mark_featured, listing_mark_sold
from models.operations.payments import (
    payment_clear_deferred_listing,
    payment_find_active_for_auction,
    payment_get,
    payment_get_by_intent,
    payment_mark_settled,
    payments_for_auction,
)
from models.operations.users import user_block, user_get, user_grant_verified_batch
from settlement import notifications
from settlement.notifications import NotificationDispatcher
from settlement.payments import PaymentSessionManager, Verification
from utils import log

logger = log.get_logger(__name__)

MAX_LISTING_IMAGES = 5

# Outcomes of an auction-winner expiry
PROMOTED = "promoted"
FAILED = "failed"
SKIPPED = "skipped"


def deferred_listing_key(payment_id: str) -> str:
    return f"listing::{payment_id}"


class SettlementCoordinator:
    def __init__(
        self,
        conf: PaymentConf,
        sessions: PaymentSessionManager,
        notifier: NotificationDispatcher,
    ):
        self.conf = conf
        self.sessions = sessions
        self.notifier = notifier

    @property
    def auction_payment_window(self) -> timedelta:
        return timedelta(hours=self.conf.auction_payment_window_hours)

    # ------------------------------------------------------------------
    # Auction side
    # ------------------------------------------------------------------

    async def advance_auction(self, auction_id: str, now: Optional[datetime] = None) -> Optional[Auction]:
        """End an auction past its end date and assign its winner.

        Shared by read paths and the sweeper; every step is a guarded CAS so
        concurrent callers apply each transition once.
        """
        now = now or datetime.now(timezone.utc)
        auction = await auction_get(auction_id)
        if not auction:
            return None

        if auction.data.status == "live" and derive_status(auction.data, now) == "ended":
            result = await mark_ended(auction_id, now)
            if result.item:
                auction = result.item

        d = auction.data
        if d.status == "ended" and d.winner_id is None and d.bid_count > 0:
            result = await assign_winner(auction_id, self.auction_payment_window, now)
            if result.ok:
                auction = result.item
                await self.open_winner_session(auction, now)
            elif result.item:
                auction = result.item
        return auction

    async def open_winner_session(self, auction: Auction, now: Optional[datetime] = None) -> Optional[Payment]:
        """Open the current winner's payment session and notify them.

        Errors are logged and swallowed: the assignment stands and the sweeper
        retries the session on its next pass.
        """
        now = now or datetime.now(timezone.utc)
        d = auction.data
        if not d.winner_id:
            return None

        existing = await payment_find_active_for_auction(auction.id, d.winner_id)
        if existing and existing.data.intent_id:
            return existing

        deadline = d.payment_deadline or (now + self.auction_payment_window)
        is_second_bidder = d.second_bidder_promoted
        try:
            payment = await self.sessions.create_session(
                user_id=d.winner_id,
                payment_type="auction_winner",
                amount=d.current_price,
                deadline=deadline,
                listing_id=d.listing_id,
                auction_id=auction.id,
                is_second_bidder=is_second_bidder,
            )
        except ProviderUnavailable as e:
            logger.error(f"No payment session for winner {d.winner_id} of auction {auction.id}, will retry: {e}")
            return None
        except Exception:
            logger.error(f"Payment session for winner {d.winner_id} of auction {auction.id} failed", exc_info=True)
            return None

        listing = await listing_get(d.listing_id)
        self.notifier.send(
            notifications.SECOND_BIDDER_PROMOTED if is_second_bidder else notifications.AUCTION_WON,
            d.winner_id,
            {
                "auction_id": auction.id,
                "title": listing.data.title if listing else None,
                "amount": payment.data.amount,
                "currency": payment.data.currency,
                "payment_link": payment.data.payment_link,
                "deadline": payment.data.payment_deadline.isoformat(),
            },
        )
        return payment

    async def ensure_winner_session(self, auction_id: str, user_id: str, now: Optional[datetime] = None) -> Payment:
        """On-demand payment link for the current winner."""
        now = now or datetime.now(timezone.utc)
        auction = await self.advance_auction(auction_id, now)
        if not auction:
            raise AuctionNotFound(f"Auction {auction_id} not found")

        d = auction.data
        if d.winner_id != user_id:
            raise NotAllowed("You are not the winner of this auction")
        if d.status == "paid":
            raise PaymentConflict("Payment already completed")

        for payment in await payments_for_auction(auction_id, user_id):
            if payment.data.status == "completed":
                raise PaymentConflict("Payment already completed")
        if d.status != "ended":
            raise InvalidRequest(f"Auction is {d.status}")

        existing = await payment_find_active_for_auction(auction_id, user_id)
        if existing and existing.data.intent_id:
            return existing

        return await self.sessions.create_session(
            user_id=user_id,
            payment_type="auction_winner",
            amount=d.current_price,
            deadline=d.payment_deadline or (now + self.auction_payment_window),
            listing_id=d.listing_id,
            auction_id=auction_id,
            is_second_bidder=d.second_bidder_promoted,
        )

    # ------------------------------------------------------------------
    # Payment creation
    # ------------------------------------------------------------------

    def featured_price(self, duration_days: int) -> float:
        if duration_days not in self.conf.featured_pricing:
            valid = ", ".join(str(d) for d in sorted(self.conf.featured_pricing))
            raise InvalidRequest(f"Invalid duration. Valid options: {valid} days")
        return self.conf.featured_pricing[duration_days]

    async def _require_seller(self, user_id: str):
        user = await user_get(user_id)
        if not user:
            raise NotAllowed("User not found")
        if user.data.user_type != "seller":
            raise NotAllowed("Only sellers can feature listings")
        return user

    async def create_featured_payment(self, user_id: str, listing_id: str, duration_days: int, now: Optional[datetime] = None) -> Payment:
        now = now or datetime.now(timezone.utc)
        amount = self.featured_price(duration_days)

        listing = await listing_get(listing_id)
        if not listing:
            raise ListingNotFound(f"Listing {listing_id} not found")
        if listing.data.seller_id != user_id:
            raise NotAllowed("You can only feature your own listings")
        await self._require_seller(user_id)

        payment = await self.sessions.create_session(
            user_id=user_id,
            payment_type="featured_listing",
            amount=amount,
            deadline=now + timedelta(days=self.conf.featured_payment_window_days),
            listing_id=listing_id,
            featured_duration_days=duration_days,
        )
        self.notifier.send(
            notifications.FEATURED_PAYMENT_LINK,
            user_id,
            {"title": listing.data.title, "payment_link": payment.data.payment_link},
        )
        return payment

    async def create_featured_payment_before_create(
        self,
        user_id: str,
        listing_data: ListingData,
        duration_days: int,
        auction_terms: Optional[AuctionTerms] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        """Pay-before-create: the listing is only created once its featuring fee is paid."""
        now = now or datetime.now(timezone.utc)
        amount = self.featured_price(duration_days)

        if not listing_data.images:
            raise InvalidRequest("At least one image is required")
        if len(listing_data.images) > MAX_LISTING_IMAGES:
            raise InvalidRequest(f"Maximum {MAX_LISTING_IMAGES} images allowed")
        if listing_data.listing_type == "auction" and auction_terms is None:
            raise InvalidRequest("Auction listings need a start price and an end date")
        if auction_terms is not None:
            validate_auction_terms(auction_terms.start_price, auction_terms.end_date, now)
            listing_data.listing_type = "auction"
        await self._require_seller(user_id)

        listing_data.seller_id = user_id
        return await self.sessions.create_session(
            user_id=user_id,
            payment_type="featured_listing",
            amount=amount,
            deadline=now + timedelta(days=self.conf.featured_payment_window_days),
            featured_duration_days=duration_days,
            deferred_listing=DeferredListing(listing=listing_data, auction=auction_terms),
        )

    async def create_verified_batch_payment(self, user_id: str, amount: float, now: Optional[datetime] = None) -> Payment:
        now = now or datetime.now(timezone.utc)
        if amount is None or amount <= 0:
            raise InvalidRequest("Amount must be positive")
        user = await user_get(user_id)
        if not user:
            raise NotAllowed("User not found")
        if user.data.verified_batch:
            raise InvalidRequest("You already have a verified badge")

        return await self.sessions.create_session(
            user_id=user_id,
            payment_type="verified_batch",
            amount=amount,
            deadline=now + timedelta(days=self.conf.verified_batch_payment_window_days),
        )

    # ------------------------------------------------------------------
    # Verification and webhooks
    # ------------------------------------------------------------------

    async def handle_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[Verification]:
        verification = await self.sessions.handle_webhook_event(raw_body, headers)
        if verification:
            await self.apply(verification)
        return verification

    async def verify_payment(
        self,
        payment_id: str,
        user_id: str,
        is_admin: bool = False,
        intent_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        """
        Manual verification by payment id or provider intent id (owner or admin).

        Only the intent stored on the payment is read back; an *intent_id* that
        belongs to another payment is refused.
        """
        now = now or datetime.now(timezone.utc)
        payment = await payment_get(payment_id)
        if not payment and intent_id:
            payment = await payment_get_by_intent(intent_id)
        if not payment:
            payment = await payment_get_by_intent(payment_id)
        if not payment:
            raise PaymentNotFound("Payment not found")
        if payment.data.user_id != user_id and not is_admin:
            raise NotAllowed("Unauthorized")
        if intent_id and intent_id != payment.data.intent_id:
            raise InvalidRequest("Intent does not belong to this payment")

        if payment.data.intent_id:
            await self.apply(await self.sessions.verify(payment.data.intent_id, now, payment=payment), now)
        return await payment_get(payment.id) or payment

    async def apply(self, verification: Verification, now: Optional[datetime] = None) -> bool:
        """Act on what ``verify`` recorded. Returns True if a completion was settled."""
        if verification.processing is not None:
            await self.on_payment_processing(verification.processing)
        if verification.closed is not None:
            await self.on_payment_closed(verification.closed)
        if verification.payment is not None:
            return await self.on_payment_completed(verification.payment, now)
        return False

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def on_payment_completed(self, payment: Payment, now: Optional[datetime] = None) -> bool:
        """Apply the completion side effects of *payment* once. Returns True if this call settled it."""
        now = now or datetime.now(timezone.utc)
        if payment.data.status != "completed" or payment.data.settled_at is not None:
            return False

        payment_type = payment.data.payment_type
        invoice = None
        if payment_type == "auction_winner":
            await self._settle_auction(payment, now)
        elif payment_type == "featured_listing":
            invoice = await self._settle_featured(payment, now)
            if invoice is None:
                return False
        elif payment_type == "verified_batch":
            result = await user_grant_verified_batch(payment.data.user_id, payment.data.paid_at or now)
            if not result.ok and result.not_found:
                logger.error(f"User {payment.data.user_id} not found for verified batch payment {payment.id}, left unsettled")
                return False
            invoice = (notifications.VERIFIED_BATCH_INVOICE, {})

        settled = await payment_mark_settled(payment.id, now)
        if not settled.ok:
            logger.info(f"Payment {payment.id} settled concurrently: {settled.error}")
            return False

        logger.info(f"Payment {payment.id} ({payment_type}) settled")
        if invoice:
            kind, extra = invoice
            self.notifier.send(
                kind,
                payment.data.user_id,
                {
                    "payment_id": payment.id,
                    "amount": payment.data.amount,
                    "currency": payment.data.currency,
                    "paid_at": (payment.data.paid_at or now).isoformat(),
                    **extra,
                },
            )
        return True

    async def _settle_auction(self, payment: Payment, now: datetime) -> None:
        auction_id = payment.data.auction_id
        result = await mark_paid(auction_id, payment.data.user_id, now)
        auction = result.item
        if not result.ok:
            already = auction is not None and auction.data.status == "paid" and auction.data.winner_id == payment.data.user_id
            if not already:
                logger.error(
                    f"Payment {payment.id} completed but auction {auction_id} cannot be marked paid "
                    f"({result.error}); refund manually"
                )
                return
        sold = await listing_mark_sold(auction.data.listing_id, now)
        if not sold.ok and sold.not_found:
            logger.error(f"Listing {auction.data.listing_id} of auction {auction_id} not found")
        logger.info(f"Auction {auction_id} paid by {payment.data.user_id}")

    async def _settle_featured(self, payment: Payment, now: datetime):
        listing = await self._materialize_listing(payment)
        if listing is None:
            logger.error(f"Featured payment {payment.id} has no listing to feature, left unsettled")
            return None

        days = payment.data.featured_duration_days or 0
        until = now + timedelta(days=days)
        featured = await listing_mark_featured(listing.id, until)
        if not featured.ok and featured.not_found:
            logger.error(f"Listing {listing.id} vanished before featured payment {payment.id} settled")
            return None
        return (
            notifications.FEATURED_INVOICE,
            {"title": listing.data.title, "duration_days": days, "featured_until": until.isoformat()},
        )

    async def _materialize_listing(self, payment: Payment) -> Optional[Listing]:
        """The listing a featured payment is for, creating it from the draft exactly once."""
        draft = payment.data.deferred_listing
        if draft is None:
            return await listing_get(payment.data.listing_id) if payment.data.listing_id else None

        key = deferred_listing_key(payment.id)
        listing_data = draft.listing.model_copy(deep=True)
        if draft.auction is not None:
            listing, _ = await auction_create_with_listing(
                payment.data.user_id,
                listing_data,
                draft.auction.start_price,
                draft.auction.end_date,
                listing_key=key,
            )
        else:
            listing = await listing_create(payment.data.user_id, listing_data, key=key)

        cleared = await payment_clear_deferred_listing(payment.id, listing.id)
        if cleared.ok:
            logger.info(f"Listing {listing.id} created from featured payment {payment.id}")
        return listing

    # ------------------------------------------------------------------
    # Failure and expiry
    # ------------------------------------------------------------------

    async def on_payment_processing(self, payment: Payment) -> None:
        """The provider accepted the charge but has not settled it; the auction shows it in flight."""
        if payment.data.payment_type == "auction_winner" and payment.data.auction_id:
            result = await set_payment_status(payment.data.auction_id, payment.data.user_id, "processing")
            if result.ok:
                logger.info(f"Auction {payment.data.auction_id} payment by {payment.data.user_id} processing")

    async def on_payment_closed(self, payment: Payment) -> None:
        """Provider-reported failure or cancellation."""
        if payment.data.payment_type == "auction_winner" and payment.data.auction_id:
            await clear_processing(payment.data.auction_id, payment.data.user_id)
        if payment.data.payment_type == "featured_listing" and payment.data.deferred_listing is not None:
            self.notifier.send(
                notifications.FEATURED_PAYMENT_FAILED,
                payment.data.user_id,
                {
                    "title": payment.data.deferred_listing.listing.title,
                    "amount": payment.data.amount,
                    "currency": payment.data.currency,
                    "duration_days": payment.data.featured_duration_days,
                },
            )

    async def on_payment_expired(self, payment: Payment, now: Optional[datetime] = None) -> str:
        """Fallback for a payment this caller just expired. Only auction-winner payments cascade."""
        now = now or datetime.now(timezone.utc)
        if payment.data.payment_type != "auction_winner" or not payment.data.auction_id:
            return SKIPPED
        return await self.fallback(payment.data.auction_id, payment.data.user_id, now)

    async def fallback(self, auction_id: str, failed_user_id: str, now: Optional[datetime] = None) -> str:
        """Block the winner who did not pay; promote the second bidder once, or fail the auction."""
        now = now or datetime.now(timezone.utc)
        blocked = await user_block(failed_user_id, f"Missed payment deadline for auction {auction_id}", now)
        if blocked.ok:
            logger.info(f"User {failed_user_id} blocked for missing payment on auction {auction_id}")
            self.notifier.send(notifications.ACCOUNT_BLOCKED, failed_user_id, {"auction_id": auction_id})

        auction = await auction_get(auction_id)
        if not auction or auction.data.status != "ended" or auction.data.winner_id != failed_user_id:
            logger.info(f"Auction {auction_id} no longer awaits payment from {failed_user_id}")
            return SKIPPED

        promoted = await promote_second_bidder(auction_id, failed_user_id, self.auction_payment_window, now)
        if promoted.ok:
            logger.info(f"Auction {auction_id}: second bidder {promoted.item.data.winner_id} promoted")
            await self.open_winner_session(promoted.item, now)
            return PROMOTED

        failed = await mark_payment_failed(auction_id, failed_user_id)
        if failed.ok:
            logger.info(f"Auction {auction_id} payment failed ({promoted.error})")
            return FAILED
        return SKIPPED
