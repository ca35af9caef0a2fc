"""Memory of provider events already applied.

Providers redeliver webhooks freely. Booking transitions are guarded in
the database anyway; this only short-circuits a redelivery and replays
the summary the first delivery produced.
"""

import time
from collections import OrderedDict


class ProcessedEvents:
    """Recently applied events per process, bounded by age and count."""

    def __init__(self, ttl_seconds: float = 24 * 3600, max_entries: int = 10_000):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str], tuple[float, dict]] = OrderedDict()

    def _evict(self, now: float) -> None:
        while self._entries:
            key, (stored_at, _) = next(iter(self._entries.items()))
            if now - stored_at < self.ttl_seconds and len(self._entries) <= self.max_entries:
                break
            del self._entries[key]

    def seen(self, provider: str, event_id: str) -> dict | None:
        """Summary of the first delivery of this event, if it was applied."""
        now = time.monotonic()
        self._evict(now)
        entry = self._entries.get((provider, event_id))
        return entry[1] if entry else None

    def remember(self, provider: str, event_id: str, summary: dict) -> None:
        now = time.monotonic()
        self._entries[(provider, event_id)] = (now, summary)
        self._entries.move_to_end((provider, event_id))
        self._evict(now)

    def clear(self) -> None:
        self._entries.clear()


processed_events = ProcessedEvents()
