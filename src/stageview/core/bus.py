"""
CONTRACT: inline (source: src/stageview/core/bus.md)
ROLE: In-process pub/sub with bounded queues.

INPUTS:
  - Topic: n/a  Type: n/a
OUTPUTS:
  - Topic: capture.frames.<camera_id>  Type: VideoFrame
  - Topic: capture.status  Type: dict
  - Topic: log.events  Type: LogEvent

CONFIG KEYS:
  - bus.max_queue_depth: per-subscriber queue depth

PERF / TIMING:
  - preserve per-topic ordering

FAILURE MODES:
  - queue full -> drop oldest -> on_drop(topic, depth)

LOG EVENTS:
  - module=core.bus, event=queue_full, payload keys=topic, depth

TESTS:
  - tests/test_log_sink.py covers drop-oldest behaviour

CONTRACT DETAILS (inline from src/stageview/core/bus.md):
# Bus contract

- Frames and status snapshots fan out to any number of subscribers.
- Subscribers match an exact topic or a `prefix.*` pattern.
- Backpressure via bounded queues per subscriber; the newest message wins.
- Publishing never blocks the capture tick.
"""

from __future__ import annotations

import queue
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


DropHandler = Callable[[str, int], None]


@dataclass
class _Subscription:
    pattern: str
    inbox: "queue.Queue[Any]"
    dropped: int = 0

    def matches(self, topic: str) -> bool:
        if self.pattern.endswith(".*"):
            return topic.startswith(self.pattern[:-1])
        return topic == self.pattern


@dataclass
class _TopicStats:
    published: int = 0
    dropped: int = 0


class Bus:
    """Topic fan-out for frames, status snapshots and log events.

    A subscription pattern is either an exact topic or a prefix ending in
    ``.*`` (``capture.frames.*`` sees every camera). Each subscriber owns a
    bounded inbox; on overflow the oldest entry is discarded so a slow
    consumer only ever lags by ``max_queue_depth`` messages.
    """

    def __init__(self, max_queue_depth: int = 8, on_drop: Optional[DropHandler] = None) -> None:
        self._depth = max(1, int(max_queue_depth))
        self._on_drop = on_drop
        self._lock = threading.Lock()
        self._subs: List[_Subscription] = []
        self._stats: Dict[str, _TopicStats] = defaultdict(_TopicStats)

    def set_drop_handler(self, on_drop: Optional[DropHandler]) -> None:
        self._on_drop = on_drop

    def subscribe(self, pattern: str) -> "queue.Queue[Any]":
        sub = _Subscription(pattern, queue.Queue(maxsize=self._depth))
        with self._lock:
            self._subs.append(sub)
        return sub.inbox

    def unsubscribe(self, pattern: str, inbox: "queue.Queue[Any]") -> None:
        with self._lock:
            self._subs = [s for s in self._subs if not (s.pattern == pattern and s.inbox is inbox)]

    def publish(self, topic: str, msg: Any) -> int:
        """Deliver ``msg`` to every matching subscriber; returns the fan-out count."""
        with self._lock:
            targets = [s for s in self._subs if s.matches(topic)]
            stats = self._stats[topic]
            stats.published += 1
        for sub in targets:
            if not _offer(sub.inbox, msg):
                continue
            with self._lock:
                sub.dropped += 1
                stats.dropped += 1
            if self._on_drop is not None:
                self._on_drop(topic, self._depth)
        return len(targets)

    def get_drop_counts(self) -> Dict[str, int]:
        with self._lock:
            return {topic: s.dropped for topic, s in self._stats.items() if s.dropped}

    def get_publish_counts(self) -> Dict[str, int]:
        with self._lock:
            return {topic: s.published for topic, s in self._stats.items()}


def _offer(inbox: "queue.Queue[Any]", msg: Any) -> bool:
    """Put without blocking; True when an older message had to be evicted."""
    evicted = False
    while True:
        try:
            inbox.put_nowait(msg)
            return evicted
        except queue.Full:
            try:
                inbox.get_nowait()
                evicted = True
            except queue.Empty:
                pass
