"""Process-local, fixed-window usage counters for tool rate limiting.

Usage for every ``(user_id, tool_name)`` pair is split into two independent
counters keyed by bucket labels derived from local wall-clock time: one per
minute (``YYYY-MM-DD-HH-MM``) and one per day (``YYYY-MM-DD``). A limit check
only ever looks at the current bucket, so a user can burst up to twice the
per-minute limit across a minute boundary. Counts are never persisted.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from toolgate.logging import get_logger

logger = get_logger(__name__)

MINUTE = "minute"
DAY = "day"
PERIODS = (MINUTE, DAY)

DEFAULT_MINUTE_RETENTION = 10

_LABEL_FORMATS = {
    MINUTE: "%Y-%m-%d-%H-%M",
    DAY: "%Y-%m-%d",
}


def bucket_label(period: str, when: datetime) -> str:
    """Truncate *when* to the period's granularity and return its label."""
    try:
        return when.strftime(_LABEL_FORMATS[period])
    except KeyError:
        raise ValueError(f"unknown rate limit period: {period}") from None


def parse_bucket_label(period: str, label: str) -> datetime:
    return datetime.strptime(label, _LABEL_FORMATS[period])


@dataclass(frozen=True)
class RateLimitStatus:
    """Outcome of a single-period limit check."""

    allowed: bool
    reason: str
    period: Optional[str] = None
    count: int = 0
    limit: int = 0


@dataclass
class _CounterEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    minute: Dict[str, int] = field(default_factory=dict)
    day: Dict[str, int] = field(default_factory=dict)
    # Set once the sweep has dropped this entry from the map
    retired: bool = False

    def buckets(self, period: str) -> Dict[str, int]:
        return self.minute if period == MINUTE else self.day

    def is_empty(self) -> bool:
        return not self.minute and not self.day


class UsageCounters:
    """Thread-safe per-(user, tool) minute/day counters.

    The map lock only guards creating and dropping entries; reads and
    increments of one key are serialized by that key's own lock, so checks
    for unrelated keys never wait on each other.
    """

    def __init__(
        self,
        *,
        minute_retention: int = DEFAULT_MINUTE_RETENTION,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.minute_retention = minute_retention
        self._clock = clock or datetime.now
        self._entries: Dict[Tuple[str, str], _CounterEntry] = {}
        self._map_lock = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self._clock()

    def _get_or_create(self, key: Tuple[str, str]) -> _CounterEntry:
        with self._map_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _CounterEntry()
                self._entries[key] = entry
            return entry

    def current_count(
        self,
        user_id: str,
        tool_name: str,
        period: str,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        label = bucket_label(period, self._now(now))
        with self._map_lock:
            entry = self._entries.get((user_id, tool_name))
        if entry is None:
            return 0
        with entry.lock:
            return entry.buckets(period).get(label, 0)

    def check(
        self,
        user_id: str,
        tool_name: str,
        period: str,
        limit: int,
        *,
        now: Optional[datetime] = None,
    ) -> RateLimitStatus:
        count = self.current_count(user_id, tool_name, period, now=now)
        if count >= limit:
            return RateLimitStatus(
                allowed=False,
                reason=f"Rate limit exceeded: {count}/{limit} calls per {period}",
                period=period,
                count=count,
                limit=limit,
            )
        return RateLimitStatus(
            allowed=True,
            reason="Within rate limit",
            period=period,
            count=count,
            limit=limit,
        )

    def record(
        self, user_id: str, tool_name: str, *, now: Optional[datetime] = None
    ) -> None:
        """Increment the current minute and day buckets for the pair."""
        when = self._now(now)
        minute_label = bucket_label(MINUTE, when)
        day_label = bucket_label(DAY, when)
        key = (user_id, tool_name)
        while True:
            entry = self._get_or_create(key)
            with entry.lock:
                if entry.retired:
                    # Swept between lookup and lock; retry on the fresh entry
                    continue
                entry.minute[minute_label] = entry.minute.get(minute_label, 0) + 1
                entry.day[day_label] = entry.day.get(day_label, 0) + 1
                return

    def sweep(self, *, now: Optional[datetime] = None) -> int:
        """Drop minute buckets older than the retention window and past days.

        Returns the number of buckets removed.
        """
        when = self._now(now)
        cutoff = timedelta(minutes=self.minute_retention)
        today = bucket_label(DAY, when)
        removed = 0
        emptied: List[Tuple[Tuple[str, str], _CounterEntry]] = []

        with self._map_lock:
            entries = list(self._entries.items())

        for key, entry in entries:
            with entry.lock:
                for label in list(entry.minute):
                    try:
                        # Labels carry no offset; read them in the clock's zone
                        bucket_time = parse_bucket_label(MINUTE, label).replace(
                            tzinfo=when.tzinfo
                        )
                    except ValueError:
                        logger.warning("usage_bucket_label_invalid", label=label)
                        del entry.minute[label]
                        removed += 1
                        continue
                    if when - bucket_time > cutoff:
                        del entry.minute[label]
                        removed += 1
                for label in list(entry.day):
                    if label != today:
                        del entry.day[label]
                        removed += 1
                if entry.is_empty():
                    emptied.append((key, entry))

        if emptied:
            with self._map_lock:
                for key, entry in emptied:
                    with entry.lock:
                        if entry.is_empty() and self._entries.get(key) is entry:
                            entry.retired = True
                            del self._entries[key]

        if removed:
            logger.debug(
                "usage_counters_swept",
                removed_buckets=removed,
                dropped_keys=len(emptied),
                tracked_keys=len(self._entries),
            )
        return removed

    def tracked_keys(self) -> List[Tuple[str, str]]:
        with self._map_lock:
            return list(self._entries)

    def buckets(self, user_id: str, tool_name: str, period: str) -> Dict[str, int]:
        """Return a copy of the bucket map for one pair and period."""
        if period not in PERIODS:
            raise ValueError(f"unknown rate limit period: {period}")
        with self._map_lock:
            entry = self._entries.get((user_id, tool_name))
        if entry is None:
            return {}
        with entry.lock:
            return dict(entry.buckets(period))

    def clear(self) -> None:
        with self._map_lock:
            for entry in self._entries.values():
                with entry.lock:
                    entry.retired = True
            self._entries.clear()
