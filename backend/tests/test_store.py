"""Tests for MessageStore: bounded logs, id index, pagination and read receipts."""
from datetime import datetime, timedelta, timezone

import pytest

from relay.chat.rooms import RoomRegistry
from relay.chat.store import MessageStore


FIXED_NOW = datetime(2024, 2, 7, 16, 0, 0, tzinfo=timezone.utc)


def make_store(history_limit=200, clock=None):
    return MessageStore(RoomRegistry("general", ["general"]), history_limit, clock=clock)


def send(store, room, text, sender_id="conn-a", sender="A"):
    message = store.create(room=room, sender=sender, sender_id=sender_id, message=text)
    return store.append(room, message)


class TestAppend:
    """Tests for MessageStore.append and the history cap."""

    def test_append_stores_in_arrival_order(self):
        store = make_store()
        for i in range(5):
            send(store, "general", f"m{i}")
        texts = [m.message for m in store.recent("general", 10)]
        assert texts == ["m0", "m1", "m2", "m3", "m4"]

    def test_append_creates_unknown_room(self):
        store = make_store()
        send(store, "brand-new", "hello")
        assert store.rooms.exists("brand-new")
        assert store.count("brand-new") == 1

    def test_append_normalises_blank_room_to_default(self):
        store = make_store()
        message = store.create(room="  ", sender="A", sender_id="c", message="x")
        stored = store.append("  ", message)
        assert stored.room == "general"
        assert store.count("general") == 1

    def test_log_never_exceeds_cap(self):
        store = make_store(history_limit=3)
        for i in range(10):
            send(store, "general", f"m{i}")
            assert store.count("general") <= 3

    def test_overflow_keeps_most_recent_in_order(self):
        store = make_store(history_limit=3)
        for i in range(5):
            send(store, "general", f"m{i}")
        assert [m.message for m in store.recent("general", 10)] == ["m2", "m3", "m4"]

    def test_evicted_ids_leave_the_index(self):
        store = make_store(history_limit=2)
        first = send(store, "general", "first")
        second = send(store, "general", "second")
        third = send(store, "general", "third")

        assert store.get(first.id) is None
        assert store.get(second.id) is second
        assert store.get(third.id) is third

    def test_caps_are_per_room(self):
        store = make_store(history_limit=2)
        for i in range(3):
            send(store, "general", f"g{i}")
        send(store, "tech", "t0")
        assert store.count("general") == 2
        assert store.count("tech") == 1

    def test_invalid_history_limit(self):
        with pytest.raises(ValueError):
            make_store(history_limit=0)


class TestIdsAndTimestamps:
    """Ids are unique and timestamps strictly increase even on a frozen clock."""

    def test_ids_are_unique_and_increasing(self):
        store = make_store()
        ids = [send(store, "general", str(i)).id for i in range(50)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 50

    def test_frozen_clock_still_yields_strictly_increasing_timestamps(self):
        store = make_store(clock=lambda: FIXED_NOW)
        stamps = [send(store, "general", str(i)).timestamp for i in range(5)]
        assert stamps[0] == FIXED_NOW
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    def test_naive_clock_is_treated_as_utc(self):
        store = make_store(clock=lambda: FIXED_NOW.replace(tzinfo=None))
        assert send(store, "general", "x").timestamp.tzinfo is not None


class TestPagination:
    """Tests for recent / has_more / page."""

    def test_recent_without_cursor_returns_latest(self):
        store = make_store()
        for i in range(30):
            send(store, "general", f"m{i}")
        page = store.recent("general", 25)
        assert len(page) == 25
        assert page[0].message == "m5"
        assert page[-1].message == "m29"
        assert store.has_more("general", 25) is True

    def test_has_more_false_when_everything_fits(self):
        store = make_store()
        for i in range(3):
            send(store, "general", f"m{i}")
        assert store.has_more("general", 25) is False
        assert store.has_more("general", 3) is False
        assert store.has_more("general", 2) is True

    def test_recent_on_empty_room(self):
        store = make_store()
        assert store.recent("nobody-here", 25) == []
        assert store.has_more("nobody-here", 25) is False

    def test_before_cursor_is_strict(self):
        store = make_store()
        messages = [send(store, "general", f"m{i}") for i in range(5)]
        older = store.recent("general", 10, before=messages[2].timestamp)
        assert [m.message for m in older] == ["m0", "m1"]

    def test_naive_before_cursor_is_treated_as_utc(self):
        store = make_store(clock=lambda: FIXED_NOW)
        messages = [send(store, "general", f"m{i}") for i in range(3)]
        naive = messages[2].timestamp.replace(tzinfo=None)
        assert [m.message for m in store.recent("general", 10, before=naive)] == ["m0", "m1"]

    def test_unix_timestamp_cursor(self):
        ticks = iter(FIXED_NOW + timedelta(seconds=i) for i in range(3))
        store = make_store(clock=lambda: next(ticks))
        for i in range(3):
            send(store, "general", f"m{i}")
        cursor = (FIXED_NOW + timedelta(seconds=2)).timestamp()
        assert [m.message for m in store.recent("general", 10, before=cursor)] == ["m0", "m1"]

    def test_pages_are_disjoint_ordered_and_gap_free(self):
        # Frozen clock: every message would share a timestamp without the nudge.
        store = make_store(clock=lambda: FIXED_NOW)
        sent = [send(store, "general", f"m{i}") for i in range(60)]

        first, more = store.page("general", 25)
        assert more is True
        second, more = store.page("general", 25, before=first[0].timestamp)
        assert more is True
        third, more = store.page("general", 25, before=second[0].timestamp)
        assert more is False

        assert second[-1].timestamp < first[0].timestamp
        assert third[-1].timestamp < second[0].timestamp

        merged = sorted(third + second + first, key=lambda m: m.timestamp)
        assert [m.id for m in merged] == [m.id for m in sent]
        assert len({m.id for m in merged}) == 60

    def test_page_matches_recent_and_has_more(self):
        store = make_store()
        for i in range(10):
            send(store, "general", f"m{i}")
        messages, more = store.page("general", 4)
        assert messages == store.recent("general", 4)
        assert more == store.has_more("general", 4)


class TestReadReceipts:
    """Tests for mark_read."""

    def test_mark_read_returns_room_and_sender(self):
        store = make_store()
        message = send(store, "general", "hi", sender_id="conn-a")
        assert store.mark_read(message.id, "conn-b") == ("general", "conn-a")
        assert message.readBy == ["conn-b"]

    def test_mark_read_is_idempotent(self):
        store = make_store()
        message = send(store, "general", "hi")
        store.mark_read(message.id, "conn-b")
        assert store.mark_read(message.id, "conn-b") is None
        assert message.readBy == ["conn-b"]

    def test_multiple_readers(self):
        store = make_store()
        message = send(store, "general", "hi")
        store.mark_read(message.id, "conn-b")
        store.mark_read(message.id, "conn-c")
        assert message.readBy == ["conn-b", "conn-c"]

    def test_unknown_message_is_a_noop(self):
        store = make_store()
        assert store.mark_read(12345, "conn-b") is None

    def test_evicted_message_is_a_noop(self):
        store = make_store(history_limit=1)
        old = send(store, "general", "old")
        send(store, "general", "new")
        assert store.mark_read(old.id, "conn-b") is None
        assert old.readBy == []
