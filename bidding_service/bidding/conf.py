from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.conf import settings


DEFAULTS = {
    "MIN_INCREMENT": "1",
    "LOCK_TIMEOUT": 5.0,
    "SWEEP_INTERVAL": 60,
    "SUBSCRIBER_QUEUE_SIZE": 256,
    "HEARTBEAT_INTERVAL": 15,
    "AUTO_BID_MAX_ROUNDS": None,
    "STRIPE_REFUND_HANDLER": None,
}


@dataclass(frozen=True)
class BiddingSettings:
    min_increment: Decimal
    lock_timeout: float
    sweep_interval: float
    subscriber_queue_size: int
    heartbeat_interval: float
    auto_bid_max_rounds: Optional[int]
    stripe_refund_handler: Optional[str]


def bidding_settings() -> BiddingSettings:
    """Read settings.AUCTION_BIDDING, filling in defaults for missing keys."""
    values = dict(DEFAULTS)
    values.update(getattr(settings, "AUCTION_BIDDING", {}) or {})

    max_rounds = values["AUTO_BID_MAX_ROUNDS"]
    return BiddingSettings(
        min_increment=Decimal(str(values["MIN_INCREMENT"])),
        lock_timeout=float(values["LOCK_TIMEOUT"]),
        sweep_interval=float(values["SWEEP_INTERVAL"]),
        subscriber_queue_size=int(values["SUBSCRIBER_QUEUE_SIZE"]),
        heartbeat_interval=float(values["HEARTBEAT_INTERVAL"]),
        auto_bid_max_rounds=int(max_rounds) if max_rounds is not None else None,
        stripe_refund_handler=values["STRIPE_REFUND_HANDLER"],
    )
