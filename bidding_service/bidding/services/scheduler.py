import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from django.db import DatabaseError, close_old_connections
from django.utils import timezone

from ..models import Auction, Notification
from .errors import Busy, InvalidTransition
from .ledger import AuctionLedger, LedgerTransaction
from .settlement import SettlementEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    ended_count: int
    started_count: int = 0

    def as_dict(self) -> dict:
        return {"endedCount": self.ended_count, "startedCount": self.started_count}


def activate(ledger: AuctionLedger, txn: LedgerTransaction) -> Auction:
    auction = ledger.apply_transition(txn, Auction.Status.PENDING, Auction.Status.ACTIVE)
    txn.notify(
        auction.seller_id,
        Notification.Type.AUCTION_STARTED,
        {"message": f"Your auction {auction.pk} has started!"},
    )
    return auction


class ExpirySweeper:
    """
    Stateless pass over auctions whose clock has run out.

    Settles every active auction with end_time <= now and opens pending
    auctions whose start time has come. Losing a race against a manual
    end/start shows up as InvalidTransition and is skipped silently.
    """

    def __init__(
        self,
        ledger: AuctionLedger,
        settlement: SettlementEngine,
        clock: Callable[[], datetime] = timezone.now,
    ) -> None:
        self.ledger = ledger
        self.settlement = settlement
        self.clock = clock

    def sweep(self) -> SweepResult:
        now = self.clock()
        started = self._start_due(now)

        expired_ids = list(
            Auction.objects.filter(status=Auction.Status.ACTIVE, end_time__lte=now)
            .order_by("end_time", "id")
            .values_list("id", flat=True)
        )
        logger.info("Found %d expired auctions", len(expired_ids))

        ended = 0
        for auction_id in expired_ids:
            try:
                with self.ledger.locked(auction_id) as txn:
                    self.settlement.settle(txn, ended_by="system")
            except InvalidTransition:
                logger.debug("Auction %s was settled elsewhere, skipping", auction_id)
                continue
            except Busy:
                logger.warning("Auction %s busy, leaving it for the next sweep", auction_id)
                continue
            ended += 1

        return SweepResult(ended_count=ended, started_count=started)

    def _start_due(self, now: datetime) -> int:
        due_ids = list(
            Auction.objects.filter(status=Auction.Status.PENDING, start_time__lte=now, end_time__gt=now)
            .order_by("start_time", "id")
            .values_list("id", flat=True)
        )
        started = 0
        for auction_id in due_ids:
            try:
                with self.ledger.locked(auction_id) as txn:
                    activate(self.ledger, txn)
            except (InvalidTransition, Busy) as exc:
                logger.debug("Could not start auction %s: %s", auction_id, exc)
                continue
            started += 1
        return started


class AuctionScheduler:
    """Runs the sweeper every `interval` seconds until stopped."""

    def __init__(self, sweeper: ExpirySweeper, interval: float = 60) -> None:
        self.sweeper = sweeper
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Optional[SweepResult]:
        close_old_connections()
        try:
            result = self.sweeper.sweep()
        except DatabaseError:
            logger.exception("Expiry sweep failed, retrying in %ss", self.interval)
            return None
        finally:
            close_old_connections()
        if result.ended_count or result.started_count:
            logger.info("Sweep ended %d and started %d auction(s)", result.ended_count, result.started_count)
        return result

    def run_forever(self) -> None:
        logger.info("Auction scheduler running every %ss", self.interval)
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)
        logger.info("Auction scheduler stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="auction-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
