# FILE: pharmacy_ledger/services/event_fanout.py
"""
Live feed of stock / alert mutations.

The registry is owned by the FastAPI app (created at startup, closed at
shutdown) and shared by every request thread. Publishing never blocks: each
subscriber gets a bounded queue and a subscriber whose queue is full is
dropped instead of slowing everyone else down.
"""
from __future__ import annotations

import itertools
import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from fastapi.encoders import jsonable_encoder

from pharmacy_ledger.core.config import settings

logger = logging.getLogger(__name__)

INVENTORY_UPDATE = "inventory-update"
STOCK_ALERT = "stock-alert"
BATCH_EXPIRY = "batch-expiry"

EVENT_CLASSES: FrozenSet[str] = frozenset({INVENTORY_UPDATE, STOCK_ALERT, BATCH_EXPIRY})


@dataclass(frozen=True)
class FanoutEvent:
    event_class: str
    medicine_id: int
    payload: Dict[str, Any] = field(default_factory=dict)
    batch_id: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventClass": self.event_class,
            "medicineId": self.medicine_id,
            "batchId": self.batch_id,
            "payload": jsonable_encoder(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }


class Subscription:
    """One connected observer. Read with get(); closed when dropped."""

    def __init__(self, sub_id: int, event_classes: FrozenSet[str], maxsize: int):
        self.id = sub_id
        self.event_classes = event_classes
        self._queue: "queue.Queue[Optional[FanoutEvent]]" = queue.Queue(maxsize=maxsize)
        self.closed = False

    def wants(self, event: FanoutEvent) -> bool:
        return event.event_class in self.event_classes

    def offer(self, event: FanoutEvent) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            return False

    def get(self, timeout: Optional[float] = None) -> Optional[FanoutEvent]:
        """
        Next event, or None on timeout or once the subscription is closed.
        """
        if self.closed and self._queue.empty():
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True
        # wake a reader blocked in get(); a full queue is already wakeable
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass


class SubscriberRegistry:
    def __init__(self, queue_size: Optional[int] = None):
        self._lock = threading.Lock()
        self._subs: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._queue_size = queue_size or settings.FANOUT_QUEUE_SIZE
        self._closed = False

    def subscribe(self, event_classes: Optional[Iterable[str]] = None) -> Subscription:
        wanted = frozenset(event_classes) if event_classes else EVENT_CLASSES
        unknown = wanted - EVENT_CLASSES
        if unknown:
            raise ValueError(f"Unknown event classes: {sorted(unknown)}")

        with self._lock:
            if self._closed:
                raise RuntimeError("Subscriber registry is closed")
            sub = Subscription(next(self._ids), wanted, self._queue_size)
            self._subs[sub.id] = sub
        logger.info("Fan-out subscriber %s connected (%s)", sub.id, ",".join(sorted(wanted)))
        return sub

    def unsubscribe(self, sub_id: int) -> None:
        with self._lock:
            sub = self._subs.pop(sub_id, None)
        if sub is not None:
            sub.close()
            logger.info("Fan-out subscriber %s disconnected", sub_id)

    def publish(self, event: FanoutEvent) -> int:
        """
        Deliver to every interested subscriber. Returns how many received it.
        Never raises: failures are logged and the committed change stands.
        """
        delivered = 0
        dropped: List[Subscription] = []
        try:
            with self._lock:
                for sub in self._subs.values():
                    if not sub.wants(event):
                        continue
                    if sub.offer(event):
                        delivered += 1
                    else:
                        dropped.append(sub)
                for sub in dropped:
                    self._subs.pop(sub.id, None)
        except Exception:
            logger.exception("Failed to publish %s event", event.event_class)
            return delivered

        for sub in dropped:
            sub.close()
            logger.warning(
                "Dropped slow fan-out subscriber %s (queue full on %s)",
                sub.id,
                event.event_class,
            )
        return delivered

    def publish_many(self, events: Iterable[FanoutEvent]) -> None:
        for ev in events:
            self.publish(ev)

    def close_all(self) -> None:
        with self._lock:
            self._closed = True
            subs = list(self._subs.values())
            self._subs.clear()
        for sub in subs:
            sub.close()
        if subs:
            logger.info("Closed %s fan-out subscribers", len(subs))

    def __len__(self) -> int:
        with self._lock:
            return len(self._subs)


class EventBuffer:
    """
    Collects events inside a stock unit. Flushed to the registry only after
    the unit commits; discarded on rollback.
    """

    def __init__(self) -> None:
        self._events: List[FanoutEvent] = []

    def add(
        self,
        event_class: str,
        medicine_id: int,
        payload: Optional[Dict[str, Any]] = None,
        *,
        batch_id: Optional[int] = None,
    ) -> None:
        self._events.append(
            FanoutEvent(
                event_class=event_class,
                medicine_id=medicine_id,
                batch_id=batch_id,
                payload=payload or {},
            ))

    @property
    def events(self) -> List[FanoutEvent]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)


def format_sse(data: Any, event: Optional[str] = None) -> str:
    lines = []
    if event:
        lines.append(f"event: {event}")
    body = json.dumps(jsonable_encoder(data), separators=(",", ":"))
    lines.append(f"data: {body}")
    return "\n".join(lines) + "\n\n"
