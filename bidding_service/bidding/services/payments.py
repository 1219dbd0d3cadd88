"""
Entry-fee collaborator used by the bidding core.

The core only asks two things of payments: has this user paid the entry
fee for this auction, and refund this payment. Refunds dispatch on the
payment method; a wallet refund credits the member's wallet, a card refund
goes through the configured Stripe handler.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from django.db import transaction
from django.db.models import QuerySet
from django.utils import timezone

from ..models import EntryFeePayment, Wallet, WalletTransaction
from .errors import RefundFailed

logger = logging.getLogger(__name__)

StripeRefund = Callable[[str], Any]


@dataclass(frozen=True)
class EntryFeeStatus:
    paid: bool


class PaymentService:
    def __init__(self, stripe_refund: Optional[StripeRefund] = None) -> None:
        self.stripe_refund = stripe_refund
        self._handlers: Dict[str, Callable[[EntryFeePayment], None]] = {
            EntryFeePayment.Method.STRIPE: self._refund_stripe,
            EntryFeePayment.Method.WALLET: self._refund_wallet,
        }

    def entry_fee_status(self, auction_id: int, user_id: int) -> EntryFeeStatus:
        paid = EntryFeePayment.objects.filter(
            auction_id=auction_id, user_id=user_id, status=EntryFeePayment.Status.PAID
        ).exists()
        return EntryFeeStatus(paid=paid)

    def paid_entries(self, auction_id: int) -> QuerySet:
        return EntryFeePayment.objects.filter(
            auction_id=auction_id, status=EntryFeePayment.Status.PAID
        ).order_by("id")

    def issue_refund(self, payment: EntryFeePayment) -> EntryFeePayment:
        """
        Refund one entry fee. Safe to call twice: a payment that is already
        refunded is returned untouched. Raises RefundFailed otherwise.
        """
        with transaction.atomic():
            locked = EntryFeePayment.objects.select_for_update().get(pk=payment.pk)
            if locked.status == EntryFeePayment.Status.REFUNDED:
                logger.info("Entry fee %s already refunded, skipping", locked.pk)
                return locked
            if locked.status != EntryFeePayment.Status.PAID:
                raise RefundFailed(f"Entry fee {locked.pk} is {locked.status}, not paid")

            handler = self._handlers.get(locked.method)
            if handler is None:
                raise RefundFailed(f"Unknown payment method {locked.method!r} on entry fee {locked.pk}")
            handler(locked)

            locked.status = EntryFeePayment.Status.REFUNDED
            locked.refunded_at = timezone.now()
            locked.save(update_fields=["status", "refunded_at"])

        logger.info("Refunded entry fee %s (%s, %s) to user %s", locked.pk, locked.method, locked.amount, locked.user_id)
        return locked

    # --- Per-method refunds -----------------------------------------------

    def _refund_wallet(self, payment: EntryFeePayment) -> None:
        wallet, _ = Wallet.objects.select_for_update().get_or_create(user_id=payment.user_id)
        wallet.balance += payment.amount
        wallet.save(update_fields=["balance"])
        WalletTransaction.objects.create(
            wallet=wallet,
            type=WalletTransaction.Type.REFUND,
            amount=payment.amount,
            auction_id=payment.auction_id,
        )

    def _refund_stripe(self, payment: EntryFeePayment) -> None:
        if not payment.payment_intent_id:
            raise RefundFailed(f"Entry fee {payment.pk} has no payment intent")
        if self.stripe_refund is None:
            raise RefundFailed("No Stripe refund handler configured")
        try:
            self.stripe_refund(payment.payment_intent_id)
        except RefundFailed:
            raise
        except Exception as exc:
            raise RefundFailed(f"Stripe refund for entry fee {payment.pk} failed: {exc}") from exc
