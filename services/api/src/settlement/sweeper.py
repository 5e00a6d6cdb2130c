"""
Expiry Sweeper: periodic, idempotent scan that moves time-dependent state forward.

Passes, in order:

1. end live auctions past their end date and assign winners
2. expire payments past their deadline that the provider still reports
   pending, and run the fallbacks; apply what the provider reports otherwise
3. retry payment sessions for winners without an active or completed payment,
   and finish completed payments whose side effects were interrupted
4. send payment reminders

Each document is handled on its own; a failure is logged, recorded in the
report and does not stop the pass.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from conf import SweeperConf
from models.entities.couchbase.payments import ACTIVE_PAYMENT_STATUSES
from models.operations.auctions import auctions_awaiting_winner, auctions_past_end, auctions_with_unpaid_winner
from models.operations.payments import (
    payment_record_reminder,
    payments_completed_unsettled,
    payments_expiring_within,
    payments_for_auction,
)
from settlement import notifications
from settlement.coordinator import FAILED, PROMOTED, SettlementCoordinator
from settlement.payments import PaymentSessionManager
from utils import log

logger = log.get_logger(__name__)


@dataclass
class SweepReport:
    auctions_ended: int = 0
    winners_assigned: int = 0
    payments_expired: int = 0
    second_bidders_promoted: int = 0
    auctions_failed: int = 0
    sessions_retried: int = 0
    payments_settled: int = 0
    reminders_sent: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class ExpirySweeper:
    def __init__(
        self,
        coordinator: SettlementCoordinator,
        sessions: PaymentSessionManager,
        conf: SweeperConf,
    ):
        self.coordinator = coordinator
        self.sessions = sessions
        self.conf = conf

    async def run(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or datetime.now(timezone.utc)
        report = SweepReport()
        await self.end_auctions(now, report)
        await self.expire_payments(now, report)
        await self.retry_sessions(now, report)
        await self.send_reminders(now, report)
        logger.info(f"Sweep finished: {report.to_dict()}")
        return report

    async def end_auctions(self, now: datetime, report: SweepReport) -> None:
        candidates = {a.id: a for a in await auctions_past_end(now)}
        for auction in await auctions_awaiting_winner():
            candidates.setdefault(auction.id, auction)

        for auction_id, before in candidates.items():
            try:
                after = await self.coordinator.advance_auction(auction_id, now)
            except Exception as e:
                logger.error(f"Advancing auction {auction_id} failed", exc_info=True)
                report.errors.append({"auction_id": auction_id, "error": str(e)})
                continue
            if after is None:
                continue
            if before.data.status == "live" and after.data.status != "live":
                report.auctions_ended += 1
            if before.data.winner_id is None and after.data.winner_id is not None:
                report.winners_assigned += 1

    async def expire_payments(self, now: datetime, report: SweepReport) -> None:
        expired, resolved, errors = await self.sessions.sweep_expired(now)
        report.errors.extend(errors)
        report.payments_expired += len(expired)
        for verification in resolved:
            try:
                if await self.coordinator.apply(verification, now):
                    report.payments_settled += 1
            except Exception as e:
                payment_id = verification.record.id
                logger.error(f"Applying provider status {verification.provider_status} to payment {payment_id} failed", exc_info=True)
                report.errors.append({"payment_id": payment_id, "error": str(e)})
        for payment in expired:
            try:
                outcome = await self.coordinator.on_payment_expired(payment, now)
            except Exception as e:
                logger.error(f"Fallback for expired payment {payment.id} failed", exc_info=True)
                report.errors.append({"payment_id": payment.id, "error": str(e)})
                continue
            if outcome == PROMOTED:
                report.second_bidders_promoted += 1
            elif outcome == FAILED:
                report.auctions_failed += 1

    async def retry_sessions(self, now: datetime, report: SweepReport) -> None:
        for payment in await payments_completed_unsettled():
            try:
                if await self.coordinator.on_payment_completed(payment, now):
                    report.payments_settled += 1
            except Exception as e:
                logger.error(f"Settling payment {payment.id} failed", exc_info=True)
                report.errors.append({"payment_id": payment.id, "error": str(e)})

        for auction in await auctions_with_unpaid_winner():
            d = auction.data
            try:
                payments = await payments_for_auction(auction.id, d.winner_id)
                if any(p.data.status in ACTIVE_PAYMENT_STATUSES + ("completed",) for p in payments):
                    continue
                if d.payment_deadline and now > d.payment_deadline:
                    outcome = await self.coordinator.fallback(auction.id, d.winner_id, now)
                    if outcome == PROMOTED:
                        report.second_bidders_promoted += 1
                    elif outcome == FAILED:
                        report.auctions_failed += 1
                    continue
                if await self.coordinator.open_winner_session(auction, now):
                    report.sessions_retried += 1
            except Exception as e:
                logger.error(f"Session retry for auction {auction.id} failed", exc_info=True)
                report.errors.append({"auction_id": auction.id, "error": str(e)})

    async def send_reminders(self, now: datetime, report: SweepReport) -> None:
        windows = sorted(self.conf.reminder_windows_hours)
        if not windows:
            return
        for payment in await payments_expiring_within(now, windows[-1]):
            remaining_hours = (payment.data.payment_deadline - now).total_seconds() / 3600
            window = next((w for w in windows if remaining_hours <= w), None)
            if window is None or window in payment.data.reminders_sent:
                continue
            try:
                result = await payment_record_reminder(payment.id, window)
            except Exception as e:
                logger.error(f"Recording reminder for payment {payment.id} failed", exc_info=True)
                report.errors.append({"payment_id": payment.id, "error": str(e)})
                continue
            if not result.ok:
                continue
            self.coordinator.notifier.send(
                notifications.PAYMENT_REMINDER,
                payment.data.user_id,
                {
                    "auction_id": payment.data.auction_id,
                    "amount": payment.data.amount,
                    "currency": payment.data.currency,
                    "payment_link": payment.data.payment_link,
                    "hours_remaining": max(1, math.ceil(remaining_hours)),
                },
            )
            report.reminders_sent += 1
