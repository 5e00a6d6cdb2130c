from datetime import timedelta

import pytest

from conf import SweeperConf
from conftest import NOW
from models.entities.couchbase.payments import Payment
from models.operations.bids import place_bid
from models.operations.payments import payments_for_auction
from settlement import notifications
from settlement.scheduler import init_scheduler, make_sweep_job
from settlement.sweeper import SweepReport

ENDED = NOW + timedelta(hours=2)


async def _pending_winner_payment(coordinator, make_auction, make_user):
    auction = await make_auction()
    await make_user("bob")
    await place_bid(auction.id, "bob", 150, now=NOW)
    await coordinator.advance_auction(auction.id, ENDED)
    (payment,) = await payments_for_auction(auction.id, "bob")
    return payment


def _reminders(recorder):
    return [p for k, _, p in recorder.sent if k == notifications.PAYMENT_REMINDER]


@pytest.mark.asyncio
async def test_reminders_are_sent_once_per_window(coordinator, sweeper, recorder, make_auction, make_user):
    payment = await _pending_winner_payment(coordinator, make_auction, make_user)
    deadline = payment.data.payment_deadline

    first = SweepReport()
    await sweeper.send_reminders(deadline - timedelta(hours=20), first)
    repeat = SweepReport()
    await sweeper.send_reminders(deadline - timedelta(hours=19), repeat)
    await coordinator.notifier.drain()

    assert first.reminders_sent == 1
    assert repeat.reminders_sent == 0
    assert _reminders(recorder)[0]["hours_remaining"] == 20

    last = SweepReport()
    await sweeper.send_reminders(deadline - timedelta(hours=11), last)
    await sweeper.send_reminders(deadline - timedelta(hours=5), SweepReport())
    await coordinator.notifier.drain()

    assert last.reminders_sent == 1
    assert len(_reminders(recorder)) == 2
    assert (await Payment.get(payment.id)).data.reminders_sent == [24, 12]


@pytest.mark.asyncio
async def test_only_the_tightest_window_fires(coordinator, sweeper, recorder, make_auction, make_user):
    payment = await _pending_winner_payment(coordinator, make_auction, make_user)

    report = SweepReport()
    await sweeper.send_reminders(payment.data.payment_deadline - timedelta(hours=6), report)
    await coordinator.notifier.drain()

    assert report.reminders_sent == 1
    assert (await Payment.get(payment.id)).data.reminders_sent == [12]


@pytest.mark.asyncio
async def test_no_reminder_far_from_the_deadline(coordinator, sweeper, make_auction, make_user):
    payment = await _pending_winner_payment(coordinator, make_auction, make_user)

    report = SweepReport()
    await sweeper.send_reminders(payment.data.payment_deadline - timedelta(hours=30), report)
    assert report.reminders_sent == 0


@pytest.mark.asyncio
async def test_sweep_ends_auctions_and_assigns_winners(sweeper, make_auction, make_user):
    with_bids = await make_auction(listing_key="a")
    await make_auction(listing_key="b")
    await make_user("alice")
    await place_bid(with_bids.id, "alice", 120, now=NOW)

    report = await sweeper.run(ENDED)

    assert report.auctions_ended == 2
    assert report.winners_assigned == 1
    assert report.errors == []
    again = await sweeper.run(ENDED + timedelta(minutes=1))
    assert again.auctions_ended == 0
    assert again.winners_assigned == 0


def test_sweep_report_serializes():
    report = SweepReport(auctions_ended=1, errors=[{"auction_id": "x", "error": "boom"}])
    assert report.to_dict()["auctions_ended"] == 1
    assert report.to_dict()["errors"] == [{"auction_id": "x", "error": "boom"}]


def test_disabled_scheduler_does_not_start(sweeper):
    assert init_scheduler(sweeper, SweeperConf(enabled=False, interval_minutes=5)) is None


@pytest.mark.asyncio
async def test_sweep_job_logs_instead_of_raising():
    class _Broken:
        async def run(self):
            raise RuntimeError("database unavailable")

    job = make_sweep_job(_Broken())
    await job()
