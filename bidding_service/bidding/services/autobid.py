"""
Proxy bidding.

A bidder's standing commitment is derived from the bid log: their
effective ceiling is the highest `max_auto_bid` among their auto-bids on
the auction, registered at the first auto-bid that set it. Synthetic bids
repeat the ceiling, so they never move the registration. After every
accepted bid the resolver lets the strongest competing ceiling answer,
one synthetic bid per round, until nobody with a live ceiling is left to
outbid the current holder.

Each round either retires a ceiling (the price reaches or passes it) or
hands the lead to a bidder whose ceiling is still live, so the cascade
settles in at most about two rounds per distinct bidder. The winner ends
one increment above the runner-up's ceiling, not at their own.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from ..models import Bid
from .errors import BiddingError
from .ledger import AuctionLedger, LedgerTransaction
from .validator import BidProposal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ceiling:
    bidder_id: int
    amount: Decimal
    registered: Tuple[datetime, int]

    def beats(self, other: "Ceiling") -> bool:
        """Higher ceiling wins; on a tie the earlier registration wins."""
        if self.amount != other.amount:
            return self.amount > other.amount
        return self.registered < other.registered


def standing_ceilings(auction_id: int) -> Dict[int, Ceiling]:
    ceilings: Dict[int, Ceiling] = {}
    rows = (
        Bid.objects.filter(auction_id=auction_id, is_auto_bid=True, max_auto_bid__isnull=False)
        .order_by("created_at", "id")
        .values_list("bidder_id", "max_auto_bid", "created_at", "id")
    )
    for bidder_id, amount, created_at, bid_id in rows:
        current = ceilings.get(bidder_id)
        if current is None or amount > current.amount:
            ceilings[bidder_id] = Ceiling(bidder_id, amount, (created_at, bid_id))
    return ceilings


class AutoBidResolver:
    def __init__(
        self, ledger: AuctionLedger, increment: Decimal = Decimal("1"), max_rounds: Optional[int] = None
    ) -> None:
        self.ledger = ledger
        self.increment = increment
        self.max_rounds = max_rounds

    def round_limit(self, auction_id: int) -> int:
        if self.max_rounds is not None:
            return self.max_rounds
        bidders = Bid.objects.filter(auction_id=auction_id).order_by().values("bidder_id").distinct().count()
        return 2 * bidders + 2

    def next_move(self, txn: LedgerTransaction) -> Optional[BidProposal]:
        """The synthetic bid the next round would place, or None if the price is stable."""
        price = txn.auction.current_price
        holder_id = txn.holder_id
        ceilings = standing_ceilings(txn.auction.pk)

        contenders = [c for c in ceilings.values() if c.bidder_id != holder_id and c.amount > price]
        if not contenders:
            return None

        challenger = contenders[0]
        for ceiling in contenders[1:]:
            if ceiling.beats(challenger):
                challenger = ceiling

        holder = ceilings.get(holder_id)
        if holder is None or holder.amount <= price:
            amount = min(price + self.increment, challenger.amount)
            return BidProposal(challenger.bidder_id, amount, True, challenger.amount)

        if challenger.beats(holder):
            amount = min(holder.amount + self.increment, challenger.amount)
            return BidProposal(challenger.bidder_id, amount, True, challenger.amount)

        if challenger.amount == holder.amount:
            # Tied ceilings, holder registered first: holder keeps the lead at the tie.
            return BidProposal(holder.bidder_id, holder.amount, True, holder.amount)

        # Challenger cannot win; it pushes the price to its own ceiling.
        return BidProposal(challenger.bidder_id, challenger.amount, True, challenger.amount)

    def resolve(self, txn: LedgerTransaction) -> List[Bid]:
        """
        Run the cascade inside the caller's locked transaction and return the
        synthetic bids it placed, oldest first.
        """
        auction_id = txn.auction.pk
        limit = self.round_limit(auction_id)
        placed: List[Bid] = []

        for _ in range(limit):
            proposal = self.next_move(txn)
            if proposal is None:
                break
            try:
                bid = self.ledger.commit_bid(txn, proposal)
            except BiddingError as exc:
                logger.warning(
                    "Auto-bid for bidder %s on auction %s rejected (%s), stopping cascade",
                    proposal.bidder_id, auction_id, exc.code,
                )
                break
            placed.append(bid)
        else:
            if self.next_move(txn) is not None:
                logger.warning(
                    "Auto-bid cascade on auction %s hit the %d round limit at price %s",
                    auction_id, limit, txn.auction.current_price,
                )

        if placed:
            logger.info(
                "Auto-bid cascade on auction %s placed %d bid(s), price now %s held by %s",
                auction_id, len(placed), txn.auction.current_price, txn.holder_id,
            )
        return placed
