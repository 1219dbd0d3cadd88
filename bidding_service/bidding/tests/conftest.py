from datetime import datetime, timedelta, timezone as dt_timezone

import pytest

from bidding.models import EntryFeePayment
from bidding.services.bidding import build_engine
from bidding.services.fanout import EventFanout
from bidding.services.payments import PaymentService

from .factories import AuctionFactory, EntryFeePaymentFactory, MemberFactory


class Clock:
    """Settable clock handed to the engine in place of timezone.now."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class EventRecorder:
    """Fanout transport that keeps every published event."""

    def __init__(self):
        self.events = []

    def __call__(self, topic, event_type, payload):
        self.events.append((topic, event_type, payload))

    def of_type(self, event_type):
        return [payload for _, kind, payload in self.events if kind == event_type]


class FakeStripeRefunds:
    """Records refunded payment intents; intents listed in `failing` raise."""

    def __init__(self):
        self.refunded = []
        self.failing = set()

    def __call__(self, payment_intent_id):
        if payment_intent_id in self.failing:
            raise RuntimeError(f'card_declined for {payment_intent_id}')
        self.refunded.append(payment_intent_id)
        return {'id': f're_{payment_intent_id}', 'status': 'succeeded'}


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 1, 12, 0, tzinfo=dt_timezone.utc))


@pytest.fixture
def events():
    return EventRecorder()


@pytest.fixture
def stripe_refunds():
    return FakeStripeRefunds()


@pytest.fixture
def engine(clock, events, stripe_refunds):
    fanout = EventFanout(queue_size=16)
    fanout.add_transport(events)
    engine = build_engine(clock=clock, fanout=fanout, payments=PaymentService(stripe_refund=stripe_refunds))
    yield engine
    engine.shutdown()


@pytest.fixture
def auction(db, clock):
    return AuctionFactory(start_time=clock.now - timedelta(minutes=5), end_time=clock.now + timedelta(hours=1))


@pytest.fixture
def join(engine):
    """Pay the entry fee for a (new) member and join them to the auction."""

    def _join(auction, member=None, method=EntryFeePayment.Method.WALLET):
        member = member or MemberFactory()
        EntryFeePaymentFactory(user=member, auction=auction, method=method)
        engine.join_auction(auction.pk, member.pk)
        return member

    return _join
