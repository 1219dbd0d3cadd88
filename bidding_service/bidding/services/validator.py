"""
Bid validation.

`validate_bid` is a pure decision: it reads an auction snapshot and a
proposed bid and either returns the proposal unchanged or raises the
reason it is rejected. It is run twice per bid: once as a cheap pre-check
against an unlocked snapshot, and again inside the ledger's locked section
against the authoritative row.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import FrozenSet, Optional

from ..models import Auction
from .errors import (
    AuctionExpired,
    AuctionNotActive,
    BidTooLow,
    InvalidAutoBid,
    NotParticipant,
)


@dataclass(frozen=True)
class AuctionSnapshot:
    auction_id: int
    status: str
    base_price: Decimal
    current_price: Decimal
    start_time: datetime
    end_time: datetime
    seller_id: int
    participant_ids: FrozenSet[int]

    @classmethod
    def from_auction(cls, auction: Auction, participant_ids=None) -> "AuctionSnapshot":
        if participant_ids is None:
            participant_ids = auction.participants.values_list("id", flat=True)
        return cls(
            auction_id=auction.pk,
            status=auction.status,
            base_price=auction.base_price,
            current_price=auction.current_price,
            start_time=auction.start_time,
            end_time=auction.end_time,
            seller_id=auction.seller_id,
            participant_ids=frozenset(participant_ids),
        )


@dataclass(frozen=True)
class BidProposal:
    bidder_id: int
    amount: Decimal
    is_auto_bid: bool = False
    max_auto_bid: Optional[Decimal] = None


def validate_bid(snapshot: AuctionSnapshot, proposal: BidProposal, now: datetime) -> BidProposal:
    price = snapshot.current_price

    if snapshot.status != Auction.Status.ACTIVE:
        raise AuctionNotActive(
            f"Auction {snapshot.auction_id} is not active (status={snapshot.status})",
            current_price=price,
        )

    if now >= snapshot.end_time:
        raise AuctionExpired(f"Auction {snapshot.auction_id} has already ended", current_price=price)

    if proposal.bidder_id not in snapshot.participant_ids:
        raise NotParticipant(
            f"User {proposal.bidder_id} is not a participant in auction {snapshot.auction_id}. "
            "Please join the auction first.",
            current_price=price,
        )

    if proposal.amount <= price:
        raise BidTooLow(f"Bid amount must be higher than current price of {price}", current_price=price)

    if proposal.is_auto_bid:
        ceiling = proposal.max_auto_bid
        if ceiling is None or ceiling <= price:
            raise InvalidAutoBid(
                f"Max auto-bid must be higher than current price of {price}", current_price=price
            )
        if ceiling < proposal.amount:
            raise InvalidAutoBid(
                f"Max auto-bid {ceiling} is below the bid amount {proposal.amount}", current_price=price
            )

    return proposal
