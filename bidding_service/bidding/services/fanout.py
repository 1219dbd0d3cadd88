"""
Event fanout: in-process topic registry for real-time auction events.

Each auction has a topic (`auction_<id>`). Subscribers get a bounded queue
of events for one topic; transports (WebSocket bridges, message buses) can
be attached as plain callables and receive every event. Delivery is
best effort and at most once: a subscriber whose queue is full misses the
event, and must re-fetch auction state after a gap in `seq`.
"""

import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

NEW_BID = "new_bid"
AUCTION_END = "auction_end"

Transport = Callable[[str, str, Dict[str, Any]], None]


@dataclass(frozen=True)
class Event:
    topic: str
    type: str
    seq: int
    payload: Dict[str, Any] = field(default_factory=dict)


class Subscription:
    """One subscriber's view of a topic. Iterate with `get()` until it returns None."""

    _CLOSED = object()

    def __init__(self, fanout: "EventFanout", topic: str, maxsize: int) -> None:
        self.topic = topic
        self._fanout = fanout
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def _offer(self, event: Event) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            return False

    def _close(self) -> None:
        self.closed = True
        # Wake a blocked reader even if the queue is full.
        while True:
            try:
                self._queue.put_nowait(self._CLOSED)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None on timeout or once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._CLOSED:
            return None
        return item

    def drain(self) -> List[Event]:
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is not self._CLOSED:
                events.append(item)

    def close(self) -> None:
        self._fanout.unsubscribe(self)


class EventFanout:
    def __init__(self, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._topics: Dict[str, Set[Subscription]] = {}
        self._sequences: Dict[str, "itertools.count"] = {}
        self._transports: List[Transport] = []
        self._running = True

    @property
    def running(self) -> bool:
        return self._running

    def add_transport(self, transport: Transport) -> None:
        with self._lock:
            self._transports.append(transport)

    def subscribe(self, topic: str) -> Subscription:
        subscription = Subscription(self, topic, self.queue_size)
        with self._lock:
            if not self._running:
                subscription._close()
                return subscription
            self._topics.setdefault(topic, set()).add(subscription)
        logger.debug("Subscriber joined %s", topic)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._topics.get(subscription.topic)
            if subscribers is not None:
                subscribers.discard(subscription)
                if not subscribers:
                    del self._topics[subscription.topic]
        subscription._close()

    def close_topic(self, topic: str) -> None:
        """
        Forget a finished topic: its sequence counter goes and its subscribers
        are closed once they have read what is already queued.
        """
        with self._lock:
            subscriptions = list(self._topics.pop(topic, ()))
            self._sequences.pop(topic, None)
        for subscription in subscriptions:
            subscription._close()
        logger.debug("Closed topic %s (%d subscribers)", topic, len(subscriptions))

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._topics.get(topic, ()))

    def publish(self, topic: str, event_type: str, payload: Dict[str, Any]) -> Optional[Event]:
        with self._lock:
            if not self._running:
                logger.debug("Fanout stopped, discarding %s on %s", event_type, topic)
                return None
            seq = next(self._sequences.setdefault(topic, itertools.count(1)))
            event = Event(topic=topic, type=event_type, seq=seq, payload=dict(payload, seq=seq))
            subscribers = list(self._topics.get(topic, ()))
            transports = list(self._transports)

        for subscription in subscribers:
            if not subscription._offer(event):
                logger.warning("Subscriber queue full on %s, dropped %s #%s", topic, event_type, seq)

        for transport in transports:
            try:
                transport(topic, event_type, event.payload)
            except Exception:
                logger.exception("Transport %r failed delivering %s on %s", transport, event_type, topic)

        return event

    def shutdown(self) -> None:
        with self._lock:
            self._running = False
            subscriptions = [s for subs in self._topics.values() for s in subs]
            self._topics.clear()
            self._transports.clear()
        for subscription in subscriptions:
            subscription._close()
        logger.info("Event fanout shut down (%d subscribers closed)", len(subscriptions))
