import logging
from decimal import Decimal

import pytest

from bidding.models import Auction, Bid
from bidding.services.autobid import AutoBidResolver, standing_ceilings
from bidding.services.errors import BidTooLow, InvalidAutoBid
from bidding.services.fanout import NEW_BID
from bidding.services.validator import BidProposal

pytestmark = pytest.mark.django_db


def holder_and_price(auction):
    auction.refresh_from_db()
    last = Bid.objects.filter(auction=auction).order_by('-id').first()
    return (last.bidder_id if last else None), auction.current_price


def test_manual_bid_triggers_proxy_response(engine, auction, join):
    """Base 10: X bids 15, Y is too low, X sets a 50 ceiling, Z bids 20, X answers at 21."""
    x, y, z = join(auction), join(auction), join(auction)

    engine.place_bid(auction.pk, x.pk, Decimal('15'))
    with pytest.raises(BidTooLow):
        engine.place_bid(auction.pk, y.pk, Decimal('12'))

    opening = engine.set_auto_bid(auction.pk, x.pk, Decimal('50'))
    assert opening.amount == Decimal('16')
    assert opening.is_auto_bid and opening.max_auto_bid == Decimal('50')

    engine.place_bid(auction.pk, z.pk, Decimal('20'))

    assert holder_and_price(auction) == (x.pk, Decimal('21'))
    last = Bid.objects.filter(auction=auction).order_by('-id').first()
    assert last.is_auto_bid


def test_winner_pays_one_increment_over_runner_up(engine, auction, join):
    a, b, c = join(auction), join(auction), join(auction)

    engine.set_auto_bid(auction.pk, a.pk, Decimal('100'))
    engine.set_auto_bid(auction.pk, b.pk, Decimal('80'))
    assert holder_and_price(auction) == (a.pk, Decimal('81'))

    with pytest.raises(BidTooLow) as exc_info:
        engine.place_bid(auction.pk, c.pk, Decimal('50'))
    assert exc_info.value.current_price == Decimal('81')
    assert holder_and_price(auction) == (a.pk, Decimal('81'))


def test_same_result_when_manual_bid_comes_first(engine, auction, join):
    a, b, c = join(auction), join(auction), join(auction)

    engine.place_bid(auction.pk, c.pk, Decimal('50'))
    engine.set_auto_bid(auction.pk, a.pk, Decimal('100'))
    engine.set_auto_bid(auction.pk, b.pk, Decimal('80'))

    assert holder_and_price(auction) == (a.pk, Decimal('81'))


def test_equal_ceilings_go_to_earlier_registration(engine, auction, join):
    first, second = join(auction), join(auction)

    engine.set_auto_bid(auction.pk, first.pk, Decimal('60'))
    engine.set_auto_bid(auction.pk, second.pk, Decimal('60'))

    assert holder_and_price(auction) == (first.pk, Decimal('60'))


def test_ceiling_below_price_is_rejected(engine, auction, join):
    bidder = join(auction)
    engine.place_bid(auction.pk, bidder.pk, Decimal('30'))

    with pytest.raises(InvalidAutoBid):
        engine.set_auto_bid(auction.pk, bidder.pk, Decimal('30'))


def test_ceiling_inside_one_increment_bids_the_ceiling(engine, auction, join):
    bidder = join(auction)
    bid = engine.set_auto_bid(auction.pk, bidder.pk, Decimal('10.50'))
    assert bid.amount == Decimal('10.50')


def test_highest_auto_bid_sets_the_ceiling(engine, auction, join):
    bidder = join(auction)
    engine.set_auto_bid(auction.pk, bidder.pk, Decimal('30'))
    engine.set_auto_bid(auction.pk, bidder.pk, Decimal('70'))
    assert standing_ceilings(auction.pk)[bidder.pk].amount == Decimal('70')

    engine.set_auto_bid(auction.pk, bidder.pk, Decimal('40'))

    ceilings = standing_ceilings(auction.pk)
    assert list(ceilings) == [bidder.pk]
    assert ceilings[bidder.pk].amount == Decimal('70')


def test_synthetic_bids_keep_the_original_registration(engine, auction, join):
    """Three-way cascade with tied ceilings still favours the first to register."""
    a, b, c = join(auction), join(auction), join(auction)
    ledger = engine.ledger
    ledger.append_bid(auction.pk, BidProposal(a.pk, Decimal('11'), True, Decimal('60')))
    ledger.append_bid(auction.pk, BidProposal(b.pk, Decimal('12'), True, Decimal('60')))
    engine.place_bid(auction.pk, c.pk, Decimal('20'))

    assert holder_and_price(auction) == (a.pk, Decimal('60'))


def test_every_synthetic_bid_is_published_in_order(engine, auction, join, events):
    a, b = join(auction), join(auction)
    engine.set_auto_bid(auction.pk, a.pk, Decimal('100'))
    engine.set_auto_bid(auction.pk, b.pk, Decimal('80'))

    published = events.of_type(NEW_BID)
    assert [p['amount'] for p in published] == [11.0, 12.0, 81.0]
    assert [p['seq'] for p in published] == [1, 2, 3]
    assert [p['isAutoBid'] for p in published] == [True, True, True]


def test_round_limit_stops_cascade(engine, auction, join, caplog):
    a, b, c = join(auction), join(auction), join(auction)
    ledger = engine.ledger
    # Seed the log directly so no cascade has run yet.
    ledger.append_bid(auction.pk, BidProposal(a.pk, Decimal('11'), True, Decimal('30')))
    ledger.append_bid(auction.pk, BidProposal(b.pk, Decimal('12'), True, Decimal('28')))
    ledger.append_bid(auction.pk, BidProposal(c.pk, Decimal('25')))

    with caplog.at_level(logging.WARNING, logger='bidding'):
        with ledger.locked(auction.pk) as txn:
            placed = AutoBidResolver(ledger, max_rounds=1).resolve(txn)

    assert [(bid.bidder_id, bid.amount) for bid in placed] == [(a.pk, Decimal('26'))]
    assert 'round limit' in caplog.text

    with ledger.locked(auction.pk) as txn:
        placed = AutoBidResolver(ledger).resolve(txn)

    assert [(bid.bidder_id, bid.amount) for bid in placed] == [(b.pk, Decimal('28')), (a.pk, Decimal('29'))]
    assert holder_and_price(auction) == (a.pk, Decimal('29'))


def test_default_round_limit_scales_with_bidders(engine, auction, join):
    a, b = join(auction), join(auction)
    engine.place_bid(auction.pk, a.pk, Decimal('11'))
    engine.place_bid(auction.pk, b.pk, Decimal('12'))

    assert engine.resolver.round_limit(auction.pk) == 6


def test_cascade_stops_when_auction_has_ended(engine, auction, join):
    a, b = join(auction), join(auction)
    engine.ledger.append_bid(auction.pk, BidProposal(a.pk, Decimal('11'), True, Decimal('90')))
    engine.ledger.append_bid(auction.pk, BidProposal(b.pk, Decimal('12')))
    Auction.objects.filter(pk=auction.pk).update(status=Auction.Status.COMPLETED)

    with engine.ledger.locked(auction.pk) as txn:
        placed = engine.resolver.resolve(txn)

    assert placed == []
    assert holder_and_price(auction) == (b.pk, Decimal('12'))
