from decimal import Decimal
from typing import Optional


class BiddingError(Exception):
    """
    Base class for every failure the bidding core reports to callers.

    `code` is the machine-readable name used in JSON responses. Rejections
    that happen against a known auction carry `current_price`, so a client
    can offer a corrected bid without re-fetching the auction.
    """

    code = "bidding_error"
    retryable = False

    def __init__(self, message: str, current_price: Optional[Decimal] = None) -> None:
        super().__init__(message)
        self.message = message
        self.current_price = current_price

    def as_dict(self) -> dict:
        data = {"error": self.code, "message": self.message}
        if self.current_price is not None:
            data["current_price"] = float(self.current_price)
        return data


class NotFound(BiddingError):
    code = "not_found"


class AuctionNotActive(BiddingError):
    code = "auction_not_active"


class AuctionExpired(BiddingError):
    code = "auction_expired"


class NotParticipant(BiddingError):
    code = "not_participant"


class BidTooLow(BiddingError):
    code = "bid_too_low"


class InvalidAutoBid(BiddingError):
    code = "invalid_auto_bid"


class StaleBid(BiddingError):
    """Lost the race: the price moved between validation and commit."""

    code = "stale_bid"
    retryable = True


class InvalidTransition(BiddingError):
    """Status compare-and-swap failed. Benign when racing the scheduler."""

    code = "invalid_transition"


class Busy(BiddingError):
    """The auction lock could not be acquired in time."""

    code = "busy"
    retryable = True


class RefundFailed(BiddingError):
    code = "refund_failed"


class PermissionDenied(BiddingError):
    code = "permission_denied"


class InvalidAuction(BiddingError):
    code = "invalid_auction"


class EntryFeeRequired(NotParticipant):
    """Joining requires a paid entry fee for this auction."""

    code = "entry_fee_required"
