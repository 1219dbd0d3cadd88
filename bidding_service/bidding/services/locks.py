import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .errors import Busy

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class AuctionLocks:
    """
    One mutex per auction id. Different auctions never contend; two
    mutations of the same auction always run one after the other.

    An entry lives only while someone holds or waits for it, so the
    registry does not grow with the number of auctions ever touched.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[int, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, auction_id: int) -> _Entry:
        with self._guard:
            entry = self._locks.get(auction_id)
            if entry is None:
                entry = self._locks[auction_id] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, auction_id: int, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[auction_id]

    @contextmanager
    def hold(self, auction_id: int, timeout: Optional[float] = None) -> Iterator[None]:
        entry = self._checkout(auction_id)
        wait = self.timeout if timeout is None else timeout
        try:
            if not entry.lock.acquire(timeout=wait):
                logger.warning("Timed out after %.2fs waiting for auction %s", wait, auction_id)
                raise Busy(f"Auction {auction_id} is busy, retry shortly")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(auction_id, entry)
