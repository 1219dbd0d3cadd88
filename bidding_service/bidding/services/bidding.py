"""
Bidding engine: the inbound surface of the bidding core.

    place_bid        Validator -> Ledger (locked) -> Auto-bid cascade -> Fanout
    set_auto_bid     same path, the bid carries a ceiling
    join_auction     requires a paid entry fee
    start/end/cancel status compare-and-swap, settlement on end/cancel
    update/delete    owner or admin edits; only end_time moves once active
    run_expiry_sweep scheduler entry point

Collaborators are passed in; `build_engine()` wires the defaults from
settings.AUCTION_BIDDING.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from django.db import transaction
from django.utils import timezone
from django.utils.module_loading import import_string

from ..conf import bidding_settings
from ..models import Auction, Bid, EntryFeePayment, Item, Member
from .autobid import AutoBidResolver
from .errors import (
    AuctionNotActive,
    EntryFeeRequired,
    InvalidAuction,
    InvalidTransition,
    NotFound,
    PermissionDenied,
)
from .fanout import EventFanout
from .ledger import AuctionLedger
from .locks import AuctionLocks
from .notifications import DatabaseNotifier, Notifier
from .payments import PaymentService
from .scheduler import ExpirySweeper, SweepResult, activate
from .settlement import SettlementEngine
from .validator import BidProposal, validate_bid

logger = logging.getLogger(__name__)


class BiddingEngine:
    def __init__(
        self,
        ledger: AuctionLedger,
        resolver: AutoBidResolver,
        settlement: SettlementEngine,
        sweeper: ExpirySweeper,
        payments: PaymentService,
        increment: Decimal = Decimal("1"),
    ) -> None:
        self.ledger = ledger
        self.resolver = resolver
        self.settlement = settlement
        self.sweeper = sweeper
        self.payments = payments
        self.increment = increment

    @property
    def fanout(self) -> EventFanout:
        return self.ledger.fanout

    @property
    def clock(self) -> Callable[[], datetime]:
        return self.ledger.clock

    # --- Bidding --------------------------------------------------------

    def place_bid(self, auction_id: int, bidder_id: int, amount: Decimal) -> Bid:
        snapshot = self.ledger.get_snapshot(auction_id)
        proposal = BidProposal(bidder_id=bidder_id, amount=amount)
        validate_bid(snapshot, proposal, self.clock())

        with self.ledger.locked(auction_id) as txn:
            bid = self.ledger.commit_bid(txn, proposal, expected_price=snapshot.current_price)
            self.resolver.resolve(txn)
        return bid

    def set_auto_bid(self, auction_id: int, bidder_id: int, max_amount: Decimal) -> Bid:
        snapshot = self.ledger.get_snapshot(auction_id)
        validate_bid(snapshot, self._auto_bid(snapshot.current_price, bidder_id, max_amount), self.clock())

        with self.ledger.locked(auction_id) as txn:
            # Opening bid is one increment over the price at commit time.
            proposal = self._auto_bid(txn.auction.current_price, bidder_id, max_amount)
            bid = self.ledger.commit_bid(txn, proposal)
            self.resolver.resolve(txn)
        return bid

    def _auto_bid(self, price: Decimal, bidder_id: int, max_amount: Decimal) -> BidProposal:
        amount = price + self.increment
        if price < max_amount < amount:
            amount = max_amount
        return BidProposal(bidder_id=bidder_id, amount=amount, is_auto_bid=True, max_auto_bid=max_amount)

    def join_auction(self, auction_id: int, user_id: int) -> None:
        member = self._member(user_id)
        with self.ledger.locked(auction_id) as txn:
            auction = txn.auction
            if auction.status != Auction.Status.ACTIVE:
                raise AuctionNotActive(f"Auction with id {auction_id} is not active")
            if member.pk in txn.participant_ids:
                logger.debug("User %s already participates in auction %s", member.pk, auction_id)
                return
            if member.pk == auction.seller_id:
                raise PermissionDenied("Sellers cannot bid on their own auction")
            if not self.payments.entry_fee_status(auction_id, member.pk).paid:
                raise EntryFeeRequired("You must pay the entry fee before joining this auction")
            txn.add_participant(member.pk)
        logger.info("User %s joined auction %s", member.pk, auction_id)

    # --- Lifecycle ------------------------------------------------------

    def create_auction(
        self,
        item_id: int,
        seller_id: int,
        base_price: Decimal,
        end_time: datetime,
        entry_fee: Decimal = Decimal("0"),
        start_time: Optional[datetime] = None,
        buy_now_price: Optional[Decimal] = None,
    ) -> Auction:
        actor = self._member(seller_id)
        start_time = start_time or self.clock()

        with transaction.atomic():
            try:
                item = Item.objects.select_for_update().get(pk=item_id)
            except Item.DoesNotExist:
                raise NotFound(f"No product with the id of {item_id}")

            if item.seller_id != actor.pk and not actor.is_admin:
                raise PermissionDenied(f"User {actor.pk} is not authorized to create an auction for this product")
            if item.status != Item.Status.APPROVED:
                raise InvalidAuction("Product must be approved by admin before creating auction")
            if Auction.objects.filter(item=item).exists():
                raise InvalidAuction(f"Auction already exists for product with id {item_id}")
            self._check_terms(base_price, entry_fee, start_time, end_time, buy_now_price)

            auction = Auction.objects.create(
                item=item,
                seller_id=item.seller_id,
                base_price=base_price,
                current_price=base_price,
                buy_now_price=buy_now_price,
                entry_fee=entry_fee,
                start_time=start_time,
                end_time=end_time,
            )
            item.status = Item.Status.IN_AUCTION
            item.save(update_fields=["status"])

        logger.info("Auction %s created for item %s by %s", auction.pk, item.pk, actor.username)
        return auction

    EDITABLE_FIELDS = ("base_price", "entry_fee", "buy_now_price", "start_time", "end_time")

    def update_auction(self, auction_id: int, actor_id: int, changes: Dict[str, Any]) -> Auction:
        """
        Edit an auction's terms. A pending auction may change any editable
        field. An active one may only move `end_time`, and not into the past.
        """
        actor = self._member(actor_id)
        unknown = sorted(set(changes) - set(self.EDITABLE_FIELDS))
        if unknown:
            raise InvalidAuction(f"Cannot update field(s): {', '.join(unknown)}")

        with self.ledger.locked(auction_id) as txn:
            auction = txn.auction
            self._authorize(auction, actor, "update")

            if auction.status == Auction.Status.ACTIVE:
                if set(changes) - {"end_time"}:
                    raise InvalidAuction("Only the end time can be changed while the auction is active")
                end_time = changes.get("end_time")
                if end_time is not None and end_time <= self.clock():
                    raise InvalidAuction("End time cannot be in the past")
            elif auction.status != Auction.Status.PENDING:
                raise InvalidTransition(
                    f"Auction {auction_id} is {auction.status} and can no longer be updated"
                )

            terms = {name: getattr(auction, name) for name in self.EDITABLE_FIELDS}
            terms.update(changes)
            if terms["start_time"] is None or terms["end_time"] is None:
                raise InvalidAuction("Start and end time are required")
            self._check_terms(**terms)

            for name, value in changes.items():
                setattr(auction, name, value)
            update_fields = list(changes)
            if "base_price" in changes:
                # No bids exist before the auction starts.
                auction.current_price = auction.base_price
                update_fields.append("current_price")
            auction.save(update_fields=update_fields)

        logger.info("Auction %s updated by %s: %s", auction_id, actor.username, sorted(changes))
        return auction

    def delete_auction(self, auction_id: int, actor_id: int) -> None:
        actor = self._member(actor_id)
        with self.ledger.locked(auction_id) as txn:
            auction = txn.auction
            self._authorize(auction, actor, "delete")
            if auction.status not in (Auction.Status.PENDING, Auction.Status.CANCELLED):
                raise InvalidTransition(f"Cannot delete auction {auction_id} while it is {auction.status}")
            if auction.entry_fees.filter(status=EntryFeePayment.Status.PAID).exists():
                raise InvalidAuction(f"Auction {auction_id} still holds paid entry fees")

            Item.objects.filter(pk=auction.item_id, status=Item.Status.IN_AUCTION).update(
                status=Item.Status.APPROVED
            )
            auction.delete()
            txn.after_commit(lambda: self.ledger.retire(auction_id))

        logger.info("Auction %s deleted by %s", auction_id, actor.username)

    def start_auction(self, auction_id: int, actor_id: int) -> Auction:
        actor = self._member(actor_id)
        with self.ledger.locked(auction_id) as txn:
            self._authorize(txn.auction, actor, "start")
            auction = activate(self.ledger, txn)
        return auction

    def end_auction(self, auction_id: int, actor_id: int) -> Auction:
        actor = self._member(actor_id)
        with self.ledger.locked(auction_id) as txn:
            self._authorize(txn.auction, actor, "end")
            result = self.settlement.settle(
                txn, Auction.Status.ACTIVE, Auction.Status.COMPLETED, ended_by=actor.username
            )
        return result.auction

    def cancel_auction(self, auction_id: int, actor_id: int) -> Auction:
        actor = self._member(actor_id)
        with self.ledger.locked(auction_id) as txn:
            self._authorize(txn.auction, actor, "cancel")
            result = self.settlement.settle(
                txn, txn.auction.status, Auction.Status.CANCELLED, ended_by=actor.username
            )
        return result.auction

    def run_expiry_sweep(self) -> SweepResult:
        return self.sweeper.sweep()

    def shutdown(self) -> None:
        self.fanout.shutdown()

    # --- Helpers --------------------------------------------------------

    def _member(self, member_id: int) -> Member:
        try:
            return Member.objects.get(pk=member_id)
        except Member.DoesNotExist:
            raise NotFound(f"User not found with id of {member_id}")

    def _check_terms(
        self,
        base_price: Decimal,
        entry_fee: Decimal,
        start_time: datetime,
        end_time: datetime,
        buy_now_price: Optional[Decimal] = None,
    ) -> None:
        if base_price < 0:
            raise InvalidAuction("Base price cannot be negative")
        if entry_fee < 0:
            raise InvalidAuction("Entry fee cannot be negative")
        if end_time <= start_time:
            raise InvalidAuction("End time must be after start time")
        if buy_now_price is not None and buy_now_price < base_price:
            raise InvalidAuction("Buy now price cannot be below the base price")

    def _authorize(self, auction: Auction, actor: Member, action: str) -> None:
        if actor.is_admin or auction.seller_id == actor.pk:
            return
        raise PermissionDenied(f"User {actor.pk} is not authorized to {action} auction {auction.pk}")


def build_engine(
    clock: Callable[[], datetime] = timezone.now,
    fanout: Optional[EventFanout] = None,
    notifier: Optional[Notifier] = None,
    payments: Optional[PaymentService] = None,
) -> BiddingEngine:
    config = bidding_settings()

    if payments is None:
        stripe_refund = None
        if config.stripe_refund_handler:
            stripe_refund = import_string(config.stripe_refund_handler)
        payments = PaymentService(stripe_refund=stripe_refund)

    ledger = AuctionLedger(
        locks=AuctionLocks(timeout=config.lock_timeout),
        fanout=fanout or EventFanout(queue_size=config.subscriber_queue_size),
        notifier=notifier or DatabaseNotifier(),
        clock=clock,
    )
    settlement = SettlementEngine(ledger, payments)
    return BiddingEngine(
        ledger=ledger,
        resolver=AutoBidResolver(ledger, increment=config.min_increment, max_rounds=config.auto_bid_max_rounds),
        settlement=settlement,
        sweeper=ExpirySweeper(ledger, settlement, clock=clock),
        payments=payments,
        increment=config.min_increment,
    )
