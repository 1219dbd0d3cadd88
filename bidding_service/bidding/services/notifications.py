import logging
from typing import Any, Dict, Optional

from django.db import DatabaseError

from ..models import Notification

logger = logging.getLogger(__name__)


class Notifier:
    """Fire-and-forget user notifications. Subclasses pick the delivery channel."""

    def notify(self, user_id: int, kind: str, payload: Dict[str, Any], auction_id: Optional[int] = None) -> None:
        raise NotImplementedError


class DatabaseNotifier(Notifier):
    """Stores notifications as rows the user's inbox reads from."""

    def notify(self, user_id: int, kind: str, payload: Dict[str, Any], auction_id: Optional[int] = None) -> None:
        try:
            Notification.objects.create(recipient_id=user_id, type=kind, auction_id=auction_id, payload=payload)
        except DatabaseError:
            logger.exception("Failed to store %s notification for user %s", kind, user_id)
            return
        logger.debug("Notified user %s: %s", user_id, kind)
