"""
Auction ledger: the authoritative price, status and bid log of each auction.

Every mutation runs inside `AuctionLedger.locked(auction_id)`, which holds
the per-auction mutex, opens a database transaction and re-reads the row
with SELECT ... FOR UPDATE. Events and notifications produced while the
lock is held are queued on the `LedgerTransaction` and delivered after the
transaction commits but before the lock is released, so subscribers see
one auction's events in commit order. Work that must not roll back with
the auction row, such as entry-fee refunds, is queued with `after_commit()`
and runs at the same point.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from django.db import transaction
from django.utils import timezone

from ..models import Auction, Bid, Notification
from .errors import BidTooLow, NotFound, StaleBid
from .fanout import NEW_BID, EventFanout
from .lifecycle import AuctionLifecycle
from .locks import AuctionLocks
from .notifications import Notifier
from .validator import AuctionSnapshot, BidProposal, validate_bid

logger = logging.getLogger(__name__)


class LedgerTransaction:
    """Locked view of one auction plus the side effects to publish on commit."""

    def __init__(self, auction: Auction) -> None:
        self.auction = auction
        self._participant_ids: Optional[set] = None
        self._holder_id: Optional[int] = None
        self._holder_loaded = False
        self._events: List[Tuple[str, Dict[str, Any]]] = []
        self._notifications: List[Tuple[int, str, Dict[str, Any]]] = []
        self._after_commit: List[Callable[[], None]] = []

    @property
    def participant_ids(self) -> set:
        if self._participant_ids is None:
            self._participant_ids = set(self.auction.participants.values_list("id", flat=True))
        return self._participant_ids

    def add_participant(self, user_id: int) -> None:
        self.auction.participants.add(user_id)
        self.participant_ids.add(user_id)

    @property
    def holder_id(self) -> Optional[int]:
        """Bidder of the most recent accepted bid, i.e. who holds the current price."""
        if not self._holder_loaded:
            self._holder_id = (
                Bid.objects.filter(auction_id=self.auction.pk)
                .order_by("-id")
                .values_list("bidder_id", flat=True)
                .first()
            )
            self._holder_loaded = True
        return self._holder_id

    def set_holder(self, bidder_id: int) -> None:
        self._holder_id = bidder_id
        self._holder_loaded = True

    def snapshot(self) -> AuctionSnapshot:
        return AuctionSnapshot.from_auction(self.auction, self.participant_ids)

    def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        self._events.append((event_type, payload))

    def notify(self, user_id: int, kind: str, payload: Dict[str, Any]) -> None:
        self._notifications.append((user_id, kind, payload))

    def after_commit(self, func: Callable[[], None]) -> None:
        """Run `func` once the transaction has committed, still under the auction lock."""
        self._after_commit.append(func)

    def flush(self, fanout: EventFanout, notifier: Notifier) -> None:
        for event_type, payload in self._events:
            fanout.publish(self.auction.topic, event_type, payload)
        for user_id, kind, payload in self._notifications:
            notifier.notify(user_id, kind, payload, auction_id=self.auction.pk)
        callbacks = list(self._after_commit)
        self._events.clear()
        self._notifications.clear()
        self._after_commit.clear()
        for func in callbacks:
            func()


class AuctionLedger:
    def __init__(
        self,
        locks: AuctionLocks,
        fanout: EventFanout,
        notifier: Notifier,
        clock: Callable[[], datetime] = timezone.now,
    ) -> None:
        self.locks = locks
        self.fanout = fanout
        self.notifier = notifier
        self.clock = clock

    # --- Reads ----------------------------------------------------------

    def get_snapshot(self, auction_id: int) -> AuctionSnapshot:
        try:
            auction = Auction.objects.get(pk=auction_id)
        except Auction.DoesNotExist:
            raise NotFound(f"Auction not found with id of {auction_id}")
        return AuctionSnapshot.from_auction(auction)

    # --- Locked section -------------------------------------------------

    @contextmanager
    def locked(self, auction_id: int) -> Iterator[LedgerTransaction]:
        with self.locks.hold(auction_id):
            with transaction.atomic():
                try:
                    auction = Auction.objects.select_for_update().get(pk=auction_id)
                except Auction.DoesNotExist:
                    raise NotFound(f"Auction not found with id of {auction_id}")
                txn = LedgerTransaction(auction)
                yield txn
            txn.flush(self.fanout, self.notifier)

    # --- Mutations ------------------------------------------------------

    def append_bid(
        self, auction_id: int, proposal: BidProposal, expected_price: Optional[Decimal] = None
    ) -> Bid:
        with self.locked(auction_id) as txn:
            return self.commit_bid(txn, proposal, expected_price)

    def commit_bid(
        self, txn: LedgerTransaction, proposal: BidProposal, expected_price: Optional[Decimal] = None
    ) -> Bid:
        """
        Re-validate `proposal` against the locked row and append it.

        `expected_price` is the price the caller validated against. If the
        price has moved since and the bid no longer beats it, the caller
        lost a race and gets StaleBid rather than BidTooLow.
        """
        auction = txn.auction
        now = self.clock()
        price = auction.current_price

        try:
            validate_bid(txn.snapshot(), proposal, now)
        except BidTooLow:
            if expected_price is not None and expected_price != price:
                raise StaleBid(
                    f"Price moved from {expected_price} to {price} before the bid was committed",
                    current_price=price,
                )
            raise

        previous_holder = txn.holder_id
        bid = Bid.objects.create(
            auction=auction,
            bidder_id=proposal.bidder_id,
            amount=proposal.amount,
            is_auto_bid=proposal.is_auto_bid,
            max_auto_bid=proposal.max_auto_bid if proposal.is_auto_bid else None,
            created_at=now,
        )

        auction.current_price = proposal.amount
        auction.last_bid_time = now
        auction.save(update_fields=["current_price", "last_bid_time"])

        txn.set_holder(bid.bidder_id)
        txn.emit(
            NEW_BID,
            {
                "auctionId": auction.pk,
                "bidId": bid.pk,
                "bidderId": bid.bidder_id,
                "amount": float(bid.amount),
                "isAutoBid": bid.is_auto_bid,
                "timestamp": now.isoformat(),
            },
        )
        if previous_holder is not None and previous_holder != bid.bidder_id:
            txn.notify(
                previous_holder,
                Notification.Type.OUTBID,
                {"message": f"You've been outbid. Current bid is now {bid.amount}", "amount": float(bid.amount)},
            )

        logger.info(
            "Bid %s accepted on auction %s: bidder=%s amount=%s auto=%s",
            bid.pk, auction.pk, bid.bidder_id, bid.amount, bid.is_auto_bid,
        )
        return bid

    def retire(self, auction_id: int) -> None:
        """Drop per-auction fanout state once the auction can publish nothing more."""
        self.fanout.close_topic(Auction.topic_for(auction_id))

    def transition_status(self, auction_id: int, expected: str, target: str) -> Auction:
        with self.locked(auction_id) as txn:
            return self.apply_transition(txn, expected, target)

    def apply_transition(self, txn: LedgerTransaction, expected: str, target: str) -> Auction:
        auction = txn.auction
        lifecycle = AuctionLifecycle(auction.status)
        auction.status = lifecycle.advance(expected, target)
        auction.save(update_fields=["status"])
        logger.info("Auction %s moved %s -> %s", auction.pk, expected, target)
        return auction
