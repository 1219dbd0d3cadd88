import threading
from decimal import Decimal

import pytest
from django.db import connection

from bidding.models import Auction, Bid, EntryFeePayment
from bidding.services.errors import BidTooLow, Busy, InvalidTransition, StaleBid
from bidding.services.fanout import AUCTION_END, NEW_BID

pytestmark = pytest.mark.django_db(transaction=True)


def run_in_threads(targets):
    barrier = threading.Barrier(len(targets))
    errors = []

    def wrap(target):
        def run():
            try:
                barrier.wait()
                target()
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()
        return run

    threads = [threading.Thread(target=wrap(target)) for target in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    assert not any(thread.is_alive() for thread in threads)
    return errors


def test_concurrent_bids_keep_the_log_monotonic(engine, auction, join, events):
    bidders = [join(auction) for _ in range(8)]
    accepted, rejected = [], []

    def bidder_loop(index, bidder):
        def loop():
            for round_no in range(5):
                amount = Decimal(11 + index + 8 * round_no)
                try:
                    accepted.append(engine.place_bid(auction.pk, bidder.pk, amount).amount)
                except (BidTooLow, StaleBid, Busy):
                    rejected.append(amount)
        return loop

    errors = run_in_threads([bidder_loop(i, b) for i, b in enumerate(bidders)])

    assert errors == []
    assert len(accepted) + len(rejected) == 40
    amounts = list(Bid.objects.filter(auction=auction).order_by('id').values_list('amount', flat=True))
    assert len(amounts) == len(accepted)
    assert all(a < b for a, b in zip(amounts, amounts[1:]))

    auction.refresh_from_db()
    assert auction.current_price == Decimal('50') == amounts[-1]

    published = events.of_type(NEW_BID)
    assert [p['seq'] for p in published] == list(range(1, len(amounts) + 1))
    assert [Decimal(str(p['amount'])) for p in published] == amounts


def test_manual_end_racing_the_sweeper_settles_once(engine, auction, join, clock, events):
    loser, winner = join(auction), join(auction)
    engine.place_bid(auction.pk, loser.pk, Decimal('11'))
    engine.place_bid(auction.pk, winner.pk, Decimal('12'))
    clock.now = auction.end_time
    sweeps = []

    def manual_end():
        try:
            engine.end_auction(auction.pk, auction.seller_id)
        except InvalidTransition:
            pass

    errors = run_in_threads([manual_end, lambda: sweeps.append(engine.run_expiry_sweep())])

    assert errors == []
    auction.refresh_from_db()
    assert auction.status == Auction.Status.COMPLETED
    assert auction.winner_id == winner.pk
    assert len(events.of_type(AUCTION_END)) == 1
    assert loser.wallet.balance == Decimal('5.00')
    assert EntryFeePayment.objects.filter(auction=auction, status=EntryFeePayment.Status.REFUNDED).count() == 1
