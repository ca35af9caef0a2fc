"""Tests for the memory of applied provider events."""

from hostelhub.core.idempotency import ProcessedEvents


class TestProcessedEvents:
    """Tests for ProcessedEvents."""

    def test_replays_first_summary(self):
        events = ProcessedEvents()

        events.remember("stripe", "evt_1", {"action": "confirmed"})

        assert events.seen("stripe", "evt_1") == {"action": "confirmed"}
        assert events.seen("stripe", "evt_2") is None
        assert events.seen("manual", "evt_1") is None

    def test_forgets_after_ttl(self):
        events = ProcessedEvents(ttl_seconds=0)

        events.remember("stripe", "evt_1", {"action": "confirmed"})

        assert events.seen("stripe", "evt_1") is None

    def test_keeps_only_newest_entries(self):
        """Should evict the oldest events once over capacity."""
        events = ProcessedEvents(max_entries=2)

        for n in range(3):
            events.remember("stripe", f"evt_{n}", {"n": n})

        assert events.seen("stripe", "evt_0") is None
        assert events.seen("stripe", "evt_1") == {"n": 1}
        assert events.seen("stripe", "evt_2") == {"n": 2}
