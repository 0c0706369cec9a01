"""
Per-build event channels.

Each build gets one channel. Any number of subscribers can attach to it; each
subscription owns its own queue, so a slow consumer never blocks the
pipeline. A disconnected consumer is dropped with close(); one that falls
more than max_pending events behind is dropped by the bus.

Rules:
- seq is monotonic per build, starting at 1; consumers dedupe on it
- Every published event is appended to the build's persistent log first,
  so a reconnecting consumer can replay(after_seq) and then subscribe
- close_channel() ends every open subscription and forgets the channel;
  it is called when the build completes
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class BuildEventType(str, Enum):
    PHASE = "phase"
    PROGRESS = "progress"
    LOG = "log"
    COMPLETE = "complete"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass(frozen=True)
class BuildLogEvent:
    """
    One structured build log line.

    meta carries optional context: page_url, asset_url, savings (bytes)
    and duration (ms).
    """

    level: LogLevel
    phase: str
    message: str
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level.value, "phase": self.phase, "message": self.message, "meta": dict(self.meta)}


@dataclass(frozen=True)
class BuildEvent:
    build_id: str
    seq: int
    type: BuildEventType
    data: Dict[str, Any]
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "build_id": self.build_id,
            "seq": self.seq,
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildEvent":
        return cls(
            build_id=data["build_id"],
            seq=data["seq"],
            type=BuildEventType(data["type"]),
            data=data.get("data", {}),
            timestamp=data["timestamp"],
        )


_CLOSED = object()
DEFAULT_MAX_PENDING = 1000


class Subscription:
    """
    An iterable view of one build channel. Iteration ends on close.

    At most max_pending undelivered events are buffered. A consumer that
    falls further behind is closed with lagged=True; it can catch up with
    replay(after_seq) and subscribe again.
    """

    def __init__(self, bus: "BuildEventBus", build_id: str, max_pending: int = DEFAULT_MAX_PENDING):
        self._bus = bus
        self.build_id = build_id
        self.max_pending = max_pending
        # One slot beyond max_pending is reserved for the close marker
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_pending + 1)
        self._lock = threading.Lock()
        self.closed = False
        self.lagged = False

    def _deliver(self, event: BuildEvent) -> None:
        with self._lock:
            if self.closed:
                return
            if self._queue.qsize() < self.max_pending:
                self._queue.put_nowait(event)
                return
            self.lagged = True
            self.closed = True
            self._queue.put_nowait(_CLOSED)
        logger.warning(f"[Events] Dropping lagging subscriber on build {self.build_id} "
                       f"({self.max_pending} events pending)")
        self._bus._unsubscribe(self)

    def _end(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    def get(self, timeout: Optional[float] = None) -> Optional[BuildEvent]:
        """
        Next event, or None once the subscription is closed.

        Raises:
            queue.Empty: If no event arrives within timeout
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        return item

    def close(self) -> None:
        """Detach from the channel (consumer disconnect)."""
        self._bus._unsubscribe(self)
        self._end()

    def __iter__(self) -> Iterator[BuildEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class BuildEventBus:
    """
    Typed, per-build event channels.

    Args:
        persistence: Optional PersistenceManager; events are appended to
            build_events before fan-out
        max_pending: Per-subscription buffer before a consumer is dropped
    """

    def __init__(self, persistence=None, max_pending: int = DEFAULT_MAX_PENDING):
        self._persistence = persistence
        self.max_pending = max_pending
        self._lock = threading.Lock()
        self._seq: Dict[str, int] = {}
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscribe(self, build_id: str) -> Subscription:
        subscription = Subscription(self, build_id, self.max_pending)
        with self._lock:
            self._subscribers.setdefault(build_id, []).append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.build_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)

    def subscriber_count(self, build_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(build_id, []))

    def _next_seq(self, build_id: str) -> int:
        if build_id not in self._seq and self._persistence is not None:
            existing = self._persistence.list_build_events(build_id)
            self._seq[build_id] = existing[-1]["seq"] if existing else 0
        self._seq[build_id] = self._seq.get(build_id, 0) + 1
        return self._seq[build_id]

    def publish(self, build_id: str, event_type: BuildEventType, data: Dict[str, Any]) -> BuildEvent:
        with self._lock:
            event = BuildEvent(
                build_id=build_id,
                seq=self._next_seq(build_id),
                type=event_type,
                data=data,
                timestamp=datetime.now().isoformat(),
            )
            if self._persistence is not None:
                self._persistence.append_build_event(build_id, event.seq, event.to_dict())
            subscribers = list(self._subscribers.get(build_id, []))
        for subscription in subscribers:
            subscription._deliver(event)
        return event

    def phase(self, build_id: str, phase: str, status: str) -> BuildEvent:
        return self.publish(build_id, BuildEventType.PHASE, {"phase": phase, "status": status})

    def progress(self, build_id: str, phase: str, done: int, total: int, item: str = "") -> BuildEvent:
        return self.publish(build_id, BuildEventType.PROGRESS,
                            {"phase": phase, "done": done, "total": total, "item": item})

    def log(self, build_id: str, level: LogLevel, phase: str, message: str, **meta: Any) -> BuildEvent:
        entry = BuildLogEvent(level=level, phase=phase, message=message,
                              meta={k: v for k, v in meta.items() if v is not None})
        return self.publish(build_id, BuildEventType.LOG, entry.to_dict())

    def complete(self, build_id: str, status: str, data: Optional[Dict[str, Any]] = None) -> BuildEvent:
        return self.publish(build_id, BuildEventType.COMPLETE, {"status": status, **(data or {})})

    def replay(self, build_id: str, after_seq: int = 0) -> List[BuildEvent]:
        """Persisted events after a sequence number (empty without persistence)."""
        if self._persistence is None:
            return []
        return [BuildEvent.from_dict(e) for e in self._persistence.list_build_events(build_id, after_seq)]

    def close_channel(self, build_id: str) -> None:
        with self._lock:
            subscribers = self._subscribers.pop(build_id, [])
            if self._persistence is not None:
                # Resumes from the persisted log on the next publish
                self._seq.pop(build_id, None)
        for subscription in subscribers:
            subscription._end()
        if subscribers:
            logger.debug(f"[Events] Closed channel for build {build_id} ({len(subscribers)} subscriber(s))")
