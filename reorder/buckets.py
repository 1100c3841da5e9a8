"""Timestamp-keyed event buckets with cheap smallest-key access.

Both tiers of the K-Slack buffer (active and expired) are instances of this
class.  Keys live in a binary min-heap next to a dict of key -> events, so a
new key costs O(log n), peeking the smallest key is O(1), and popping it is
O(log n).  Events sharing a timestamp stay in arrival order inside their
bucket.
"""

import heapq
from collections.abc import Callable, Iterable


class TimestampBuckets:
    __slots__ = ("_keys", "_buckets", "_size")

    def __init__(self):
        self._keys: list[int] = []
        self._buckets: dict[int, list] = {}
        self._size = 0

    def add(self, timestamp: int, event) -> None:
        """Append one event to the bucket for *timestamp*."""
        bucket = self._buckets.get(timestamp)
        if bucket is None:
            bucket = self._buckets[timestamp] = []
            heapq.heappush(self._keys, timestamp)
        bucket.append(event)
        self._size += 1

    def extend(self, timestamp: int, events: Iterable) -> None:
        """Append several events to one bucket, keeping their order."""
        events = list(events)
        if not events:
            return  # never create an empty bucket
        bucket = self._buckets.get(timestamp)
        if bucket is None:
            self._buckets[timestamp] = events
            heapq.heappush(self._keys, timestamp)
        else:
            bucket.extend(events)
        self._size += len(events)

    def absorb(self, other: "TimestampBuckets") -> None:
        """Move every bucket of *other* into this one.

        On a shared key, events already held here come first.  *other* is
        left untouched; callers replace it with a fresh instance.
        """
        for timestamp, events in other._buckets.items():
            self.extend(timestamp, events)

    def first_key(self) -> int:
        """Smallest timestamp held.  Raises IndexError when empty."""
        if not self._keys:
            raise IndexError("first_key() on empty TimestampBuckets")
        return self._keys[0]

    def pop_first(self) -> tuple[int, list]:
        """Remove and return the smallest (timestamp, events) pair."""
        timestamp = heapq.heappop(self._keys)
        events = self._buckets.pop(timestamp)
        self._size -= len(events)
        return timestamp, events

    def pop_while(self, keep_going: Callable[[int], bool]) -> list[tuple[int, list]]:
        """Pop buckets in ascending order until *keep_going(key)* is False.

        Keys come out sorted, so stopping at the first failing key is exact.
        """
        popped = []
        while self._keys and keep_going(self._keys[0]):
            popped.append(self.pop_first())
        return popped

    def items(self) -> list[tuple[int, list]]:
        """(timestamp, events) pairs in ascending order, events copied."""
        return [(ts, list(self._buckets[ts])) for ts in sorted(self._keys)]

    @classmethod
    def from_items(cls, items: Iterable[tuple[int, Iterable]]) -> "TimestampBuckets":
        buckets = cls()
        for timestamp, events in items:
            buckets.extend(timestamp, events)
        return buckets

    @property
    def event_count(self) -> int:
        return self._size

    def __contains__(self, timestamp) -> bool:
        return timestamp in self._buckets

    def __len__(self) -> int:
        """Number of distinct timestamps held."""
        return len(self._keys)
