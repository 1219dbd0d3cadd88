import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from ..models import Auction, Item, Notification
from .errors import RefundFailed
from .fanout import AUCTION_END
from .ledger import AuctionLedger, LedgerTransaction
from .payments import PaymentService

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    """
    Outcome of one settlement. `refunded` and `failed_refunds` hold entry-fee
    payment ids and are filled in once the settlement has committed.
    """

    auction: Auction
    winner_id: Optional[int]
    final_price: Decimal
    refunded: List[int] = field(default_factory=list)
    failed_refunds: List[int] = field(default_factory=list)


class SettlementEngine:
    """
    Closes an auction exactly once.

    The status compare-and-swap runs first, so a second settlement of the
    same auction (scheduler racing a manual end) fails with
    InvalidTransition before it can pick a winner or refund anyone.

    Refunds run after the closing transaction commits, each in its own
    transaction. A gateway call is never made for a settlement that could
    still roll back, and a failed refund cannot undo the settlement.
    """

    def __init__(self, ledger: AuctionLedger, payments: PaymentService) -> None:
        self.ledger = ledger
        self.payments = payments

    def settle(
        self,
        txn: LedgerTransaction,
        expected: str = Auction.Status.ACTIVE,
        target: str = Auction.Status.COMPLETED,
        ended_by: str = "system",
    ) -> SettlementResult:
        auction = txn.auction
        self.ledger.apply_transition(txn, expected, target)

        winning_bid = None
        if target == Auction.Status.COMPLETED:
            # Ties on amount go to whoever reached it first.
            winning_bid = auction.bids.order_by("-amount", "created_at", "id").first()

        if winning_bid is not None:
            auction.winner_id = winning_bid.bidder_id
            auction.current_price = winning_bid.amount
            Item.objects.filter(pk=auction.item_id).update(status=Item.Status.SOLD)
            txn.notify(
                winning_bid.bidder_id,
                Notification.Type.AUCTION_WON,
                {
                    "message": f"Congratulations! You won auction {auction.pk} with a bid of {winning_bid.amount}",
                    "amount": float(winning_bid.amount),
                },
            )
        auction.ended_by = ended_by
        auction.save(update_fields=["winner", "current_price", "ended_by"])

        result = SettlementResult(auction=auction, winner_id=auction.winner_id, final_price=auction.current_price)

        txn.emit(
            AUCTION_END,
            {
                "auctionId": auction.pk,
                "winnerId": result.winner_id,
                "finalPrice": float(result.final_price),
                "status": auction.status,
            },
        )
        txn.after_commit(lambda: self._refund_entrants(result))
        txn.after_commit(lambda: self.ledger.retire(auction.pk))

        logger.info(
            "Auction %s %s by %s: winner=%s price=%s",
            auction.pk, auction.status, ended_by, result.winner_id, result.final_price,
        )
        return result

    def _refund_entrants(self, result: SettlementResult) -> None:
        """Refund every paid entry except the winner's. One failure never stops the rest."""
        auction_id = result.auction.pk
        for payment in list(self.payments.paid_entries(auction_id)):
            if result.winner_id is not None and payment.user_id == result.winner_id:
                continue
            try:
                self.payments.issue_refund(payment)
            except RefundFailed as exc:
                logger.error(
                    "Refund of entry fee %s (user %s, auction %s) failed, needs manual reconciliation: %s",
                    payment.pk, payment.user_id, auction_id, exc,
                )
                result.failed_refunds.append(payment.pk)
            except Exception:
                logger.exception(
                    "Refund of entry fee %s (user %s, auction %s) crashed, needs manual reconciliation",
                    payment.pk, payment.user_id, auction_id,
                )
                result.failed_refunds.append(payment.pk)
            else:
                result.refunded.append(payment.pk)

        logger.info(
            "Auction %s refunds ok=%d failed=%d",
            auction_id, len(result.refunded), len(result.failed_refunds),
        )
