from typing import Dict, FrozenSet

from ..models import Auction
from .errors import InvalidTransition


Status = Auction.Status


# ======================================================================
#  Auction lifecycle
#
#  PENDING    - created, not yet open for bids
#  ACTIVE     - accepting bids until end_time
#  COMPLETED  - settled; winner (if any) fixed          (terminal)
#  CANCELLED  - withdrawn by seller/admin, no winner    (terminal)
# ======================================================================
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    Status.PENDING: frozenset({Status.ACTIVE, Status.CANCELLED}),
    Status.ACTIVE: frozenset({Status.COMPLETED, Status.CANCELLED}),
    Status.COMPLETED: frozenset(),
    Status.CANCELLED: frozenset(),
}


class AuctionLifecycle:
    """
    Runtime checker for one auction's status.

    `advance(expected, target)` is a compare-and-swap: it only succeeds if
    the current status is `expected` and the move is in the table above.
    Callers hold the auction lock, so the check and the write are atomic.
    """

    def __init__(self, status: str) -> None:
        self.state = status

    def can_move_to(self, target: str) -> bool:
        return target in TRANSITIONS.get(self.state, frozenset())

    def advance(self, expected: str, target: str) -> str:
        if self.state != expected:
            raise InvalidTransition(
                f"Expected status {expected}, found {self.state}"
            )
        if not self.can_move_to(target):
            raise InvalidTransition(
                f"Cannot move from {self.state} to {target}"
            )
        self.state = target
        return self.state
