from datetime import timedelta
from decimal import Decimal

import pytest

from bidding.models import Auction, Bid, Notification
from bidding.services.errors import (
    AuctionExpired,
    BidTooLow,
    Busy,
    InvalidTransition,
    NotFound,
    NotParticipant,
    StaleBid,
)
from bidding.services.fanout import NEW_BID
from bidding.services.validator import BidProposal

pytestmark = pytest.mark.django_db


def test_accepted_bid_updates_price_and_publishes(engine, auction, join, clock, events):
    bidder = join(auction)

    bid = engine.place_bid(auction.pk, bidder.pk, Decimal('15.00'))

    auction.refresh_from_db()
    assert auction.current_price == Decimal('15.00')
    assert auction.last_bid_time == clock.now
    assert bid.created_at == clock.now
    assert events.of_type(NEW_BID) == [
        {
            'auctionId': auction.pk,
            'bidId': bid.pk,
            'bidderId': bidder.pk,
            'amount': 15.0,
            'isAutoBid': False,
            'timestamp': clock.now.isoformat(),
            'seq': 1,
        }
    ]


def test_bid_log_is_strictly_increasing(engine, auction, join):
    alice, bob = join(auction), join(auction)

    for bidder, amount in [(alice, '11'), (bob, '12.50'), (alice, '13'), (bob, '40')]:
        engine.place_bid(auction.pk, bidder.pk, Decimal(amount))

    amounts = list(Bid.objects.filter(auction=auction).order_by('id').values_list('amount', flat=True))
    assert amounts == [Decimal('11'), Decimal('12.50'), Decimal('13'), Decimal('40')]
    assert all(a < b for a, b in zip(amounts, amounts[1:]))
    auction.refresh_from_db()
    assert auction.current_price == amounts[-1]


def test_rejected_bid_leaves_no_trace(engine, auction, join, events):
    bidder = join(auction)
    engine.place_bid(auction.pk, bidder.pk, Decimal('20'))

    with pytest.raises(BidTooLow) as exc_info:
        engine.place_bid(auction.pk, bidder.pk, Decimal('20'))

    assert exc_info.value.current_price == Decimal('20')
    assert Bid.objects.filter(auction=auction).count() == 1
    assert len(events.of_type(NEW_BID)) == 1


def test_non_participant_cannot_bid(engine, auction):
    from .factories import MemberFactory

    stranger = MemberFactory()
    with pytest.raises(NotParticipant):
        engine.place_bid(auction.pk, stranger.pk, Decimal('50'))


def test_unknown_auction(engine, db):
    with pytest.raises(NotFound):
        engine.ledger.get_snapshot(424242)
    with pytest.raises(NotFound):
        engine.place_bid(424242, 1, Decimal('5'))


def test_stale_bid_when_price_moved_past_it(engine, auction, join):
    alice, bob = join(auction), join(auction)
    engine.place_bid(auction.pk, alice.pk, Decimal('20'))

    # Bob validated against the base price, then lost the race to Alice.
    with pytest.raises(StaleBid) as exc_info:
        engine.ledger.append_bid(auction.pk, BidProposal(bob.pk, Decimal('15')), expected_price=Decimal('10.00'))

    assert exc_info.value.retryable
    assert exc_info.value.current_price == Decimal('20')
    assert Bid.objects.filter(auction=auction).count() == 1


def test_bid_still_above_moved_price_is_accepted(engine, auction, join):
    alice, bob = join(auction), join(auction)
    engine.place_bid(auction.pk, alice.pk, Decimal('20'))

    bid = engine.ledger.append_bid(auction.pk, BidProposal(bob.pk, Decimal('25')), expected_price=Decimal('10.00'))

    assert bid.amount == Decimal('25')


def test_too_low_against_unchanged_price_is_not_stale(engine, auction, join):
    bidder = join(auction)
    with pytest.raises(BidTooLow) as exc_info:
        engine.ledger.append_bid(auction.pk, BidProposal(bidder.pk, Decimal('9')), expected_price=Decimal('10.00'))
    assert not isinstance(exc_info.value, StaleBid)


def test_bid_one_millisecond_before_end_is_accepted(engine, auction, join, clock):
    bidder = join(auction)
    clock.now = auction.end_time - timedelta(milliseconds=1)

    engine.place_bid(auction.pk, bidder.pk, Decimal('11'))

    assert Bid.objects.filter(auction=auction).count() == 1


@pytest.mark.parametrize('offset', [timedelta(0), timedelta(milliseconds=1)])
def test_bid_at_or_after_end_is_rejected(engine, auction, join, clock, offset):
    bidder = join(auction)
    clock.now = auction.end_time + offset

    with pytest.raises(AuctionExpired):
        engine.place_bid(auction.pk, bidder.pk, Decimal('11'))

    assert not Bid.objects.filter(auction=auction).exists()


def test_previous_holder_is_notified_when_outbid(engine, auction, join):
    alice, bob = join(auction), join(auction)
    engine.place_bid(auction.pk, alice.pk, Decimal('11'))
    engine.place_bid(auction.pk, alice.pk, Decimal('12'))
    assert not Notification.objects.exists()

    engine.place_bid(auction.pk, bob.pk, Decimal('13'))

    notification = Notification.objects.get()
    assert notification.recipient_id == alice.pk
    assert notification.type == Notification.Type.OUTBID
    assert notification.auction_id == auction.pk
    assert notification.payload['amount'] == 13.0


def test_status_transition_is_compare_and_swap(engine, auction):
    engine.ledger.transition_status(auction.pk, Auction.Status.ACTIVE, Auction.Status.COMPLETED)

    with pytest.raises(InvalidTransition):
        engine.ledger.transition_status(auction.pk, Auction.Status.ACTIVE, Auction.Status.COMPLETED)

    auction.refresh_from_db()
    assert auction.status == Auction.Status.COMPLETED


def test_transition_outside_the_table_is_rejected(engine, auction):
    Auction.objects.filter(pk=auction.pk).update(status=Auction.Status.PENDING)

    with pytest.raises(InvalidTransition):
        engine.ledger.transition_status(auction.pk, Auction.Status.PENDING, Auction.Status.COMPLETED)


def test_busy_when_lock_is_held(engine, auction, join):
    bidder = join(auction)
    engine.ledger.locks.timeout = 0.05

    with engine.ledger.locks.hold(auction.pk):
        with pytest.raises(Busy):
            engine.place_bid(auction.pk, bidder.pk, Decimal('11'))

    assert not Bid.objects.filter(auction=auction).exists()
    # The waiter that timed out gave its entry back.
    assert len(engine.ledger.locks) == 0


def test_locks_are_released_from_the_registry(engine, auction, join):
    bidder = join(auction)

    with engine.ledger.locks.hold(auction.pk):
        assert len(engine.ledger.locks) == 1
    engine.place_bid(auction.pk, bidder.pk, Decimal('11'))
    engine.place_bid(auction.pk, bidder.pk, Decimal('12'))

    assert len(engine.ledger.locks) == 0
