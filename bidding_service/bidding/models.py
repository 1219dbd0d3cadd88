from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone


MONEY = dict(max_digits=12, decimal_places=2)


class Member(models.Model):
    class Role(models.TextChoices):
        BIDDER = "BIDDER", "Bidder"
        SELLER = "SELLER", "Seller"
        ADMIN = "ADMIN", "Admin"

    username = models.CharField(max_length=50, unique=True)
    role = models.CharField(max_length=20, choices=Role.choices, default=Role.BIDDER)

    @property
    def is_admin(self) -> bool:
        return self.role == self.Role.ADMIN

    def __str__(self) -> str:
        return f"Member({self.username})"


class Item(models.Model):
    """A seller's product. Only approved items can be put up for auction."""

    class Status(models.TextChoices):
        PENDING_REVIEW = "pending", "Pending review"
        APPROVED = "approved", "Approved"
        REJECTED = "rejected", "Rejected"
        IN_AUCTION = "in_auction", "In auction"
        SOLD = "sold", "Sold"

    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    seller = models.ForeignKey(Member, on_delete=models.CASCADE, related_name="items")
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING_REVIEW)

    def __str__(self) -> str:
        return f"Item({self.name})"


class Auction(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        ACTIVE = "active", "Active"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"

    item = models.OneToOneField(Item, on_delete=models.PROTECT, related_name="auction")
    seller = models.ForeignKey(Member, on_delete=models.PROTECT, related_name="auctions_selling")

    # Pricing
    base_price = models.DecimalField(**MONEY, validators=[MinValueValidator(Decimal("0"))])
    current_price = models.DecimalField(**MONEY)
    buy_now_price = models.DecimalField(**MONEY, null=True, blank=True)
    entry_fee = models.DecimalField(**MONEY, default=Decimal("0"), validators=[MinValueValidator(Decimal("0"))])

    # Timing
    start_time = models.DateTimeField(default=timezone.now)
    end_time = models.DateTimeField()
    last_bid_time = models.DateTimeField(null=True, blank=True)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)

    participants = models.ManyToManyField(Member, related_name="joined_auctions", blank=True)
    winner = models.ForeignKey(
        Member, null=True, blank=True, on_delete=models.SET_NULL, related_name="auctions_won"
    )
    # "system" for the scheduler, otherwise the acting member's username
    ended_by = models.CharField(max_length=50, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["status", "end_time"], name="auction_status_end_idx")]

    @staticmethod
    def topic_for(auction_id: int) -> str:
        return f"auction_{auction_id}"

    @property
    def topic(self) -> str:
        return self.topic_for(self.pk)

    def __str__(self) -> str:
        return f"Auction({self.pk}, {self.status}, {self.current_price})"


class Bid(models.Model):
    """Append-only bid log entry. Never updated after creation."""

    auction = models.ForeignKey(Auction, on_delete=models.CASCADE, related_name="bids")
    bidder = models.ForeignKey(Member, on_delete=models.CASCADE, related_name="bids")

    amount = models.DecimalField(**MONEY)
    is_auto_bid = models.BooleanField(default=False)
    max_auto_bid = models.DecimalField(**MONEY, null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["id"]

    def __str__(self) -> str:
        return f"Bid(bidder={self.bidder_id}, auction={self.auction_id}, amount={self.amount})"


class EntryFeePayment(models.Model):
    """Refundable entry fee, one per (user, auction). Tagged by payment method."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PAID = "paid", "Paid"
        REFUNDED = "refunded", "Refunded"

    class Method(models.TextChoices):
        STRIPE = "stripe", "Stripe"
        WALLET = "wallet", "Wallet"

    user = models.ForeignKey(Member, on_delete=models.CASCADE, related_name="entry_fees")
    auction = models.ForeignKey(Auction, on_delete=models.CASCADE, related_name="entry_fees")
    amount = models.DecimalField(**MONEY, validators=[MinValueValidator(Decimal("0"))])
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    method = models.CharField(max_length=20, choices=Method.choices)

    # Stripe only
    payment_intent_id = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["user", "auction"], name="unique_entry_fee_per_user_auction")
        ]

    def __str__(self) -> str:
        return f"EntryFeePayment(user={self.user_id}, auction={self.auction_id}, {self.method}, {self.status})"


class Wallet(models.Model):
    user = models.OneToOneField(Member, on_delete=models.CASCADE, related_name="wallet")
    balance = models.DecimalField(**MONEY, default=Decimal("0"))

    def __str__(self) -> str:
        return f"Wallet(user={self.user_id}, balance={self.balance})"


class WalletTransaction(models.Model):
    class Type(models.TextChoices):
        DEPOSIT = "deposit", "Deposit"
        ENTRY_FEE = "entry_fee", "Entry fee"
        REFUND = "refund", "Refund"

    wallet = models.ForeignKey(Wallet, on_delete=models.CASCADE, related_name="transactions")
    type = models.CharField(max_length=20, choices=Type.choices)
    amount = models.DecimalField(**MONEY)
    auction = models.ForeignKey(Auction, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)


class Notification(models.Model):
    class Type(models.TextChoices):
        OUTBID = "outbid", "Outbid"
        AUCTION_WON = "auction_won", "Auction won"
        AUCTION_STARTED = "auction_started", "Auction started"

    recipient = models.ForeignKey(Member, on_delete=models.CASCADE, related_name="notifications")
    type = models.CharField(max_length=30, choices=Type.choices)
    auction = models.ForeignKey(Auction, null=True, blank=True, on_delete=models.CASCADE)
    payload = models.JSONField(default=dict)
    is_read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["id"]

    def __str__(self) -> str:
        return f"Notification({self.type} -> {self.recipient_id})"
