"""
Unit tests for the in-memory conversation store.
"""

from datetime import datetime, timedelta

import pytest

from nycdb_insights.core.models import EntityValue, Intent, StructuredQuery
from nycdb_insights.data.conversation_store import InMemoryConversationStore


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self):
        self.now = datetime(2024, 6, 1, 12, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryConversationStore(ttl_minutes=30, max_sessions_per_owner=2, max_history=3, clock=clock)


def make_query(intent=Intent.RISK_ASSESSMENT, text="Which buildings are risky?", entities=None):
    return StructuredQuery(intent=intent, original_query=text, entities=entities or {})


def brooklyn():
    return {"location": [EntityValue(kind="location", raw="brooklyn", value="Brooklyn")]}


class TestGetOrCreate:
    """Test session lookup and creation."""

    def test_creates_new_session(self, store, clock):
        """Test that a new session is created without an id."""
        session = store.get_or_create("user-1")

        assert session.session_id.startswith("conv_")
        assert session.owner == "user-1"
        assert session.created_at == clock.now
        assert session.message_count == 0

    def test_returns_existing_session(self, store, clock):
        """Test that an existing id returns the same session and touches it."""
        session = store.get_or_create("user-1")
        clock.advance(minutes=5)

        again = store.get_or_create("user-1", session.session_id)

        assert again is session
        assert again.last_active == clock.now

    def test_unknown_id_starts_new_session(self, store):
        """Test that an unknown id yields a fresh session."""
        session = store.get_or_create("user-1", "conv_missing")

        assert session.session_id != "conv_missing"

    def test_sessions_are_scoped_to_owner(self, store):
        """Test that one owner cannot reach another owner's session."""
        session = store.get_or_create("user-1")

        other = store.get_or_create("user-2", session.session_id)

        assert other is not session
        assert store.get("user-2", session.session_id) is None


class TestRecord:
    """Test committing turns."""

    def test_record_updates_active_state(self, store):
        """Test that intent and entities become the active context."""
        session = store.get_or_create("user-1")

        store.record(session, make_query(entities=brooklyn()), "resp_1")

        assert session.message_count == 1
        assert session.active_intent == Intent.RISK_ASSESSMENT
        assert session.active_entities["location"][0].value == "Brooklyn"
        assert session.last_turn.response_ref == "resp_1"

    def test_unknown_intent_keeps_active_intent(self, store):
        """Test that a clarification turn does not clear the active intent."""
        session = store.get_or_create("user-1")
        store.record(session, make_query(entities=brooklyn()), "resp_1")

        store.record(session, make_query(intent=Intent.UNKNOWN, text="hello"), "resp_2")

        assert session.active_intent == Intent.RISK_ASSESSMENT
        assert "location" in session.active_entities
        assert session.message_count == 2

    def test_empty_entity_lists_do_not_overwrite(self, store):
        """Test that empty entity lists leave active entities alone."""
        session = store.get_or_create("user-1")
        store.record(session, make_query(entities=brooklyn()), "resp_1")

        store.record(session, make_query(entities={"location": []}), "resp_2")

        assert session.active_entities["location"][0].value == "Brooklyn"

    def test_history_is_bounded(self, store):
        """Test that only the newest turns are kept."""
        session = store.get_or_create("user-1")
        for i in range(5):
            store.record(session, make_query(text=f"question {i}"), f"resp_{i}")

        assert [turn.query.original_query for turn in session.history] == [
            "question 2", "question 3", "question 4"
        ]
        assert session.message_count == 5


class TestEviction:
    """Test idle expiry and per-owner caps."""

    def test_idle_session_expires(self, store, clock):
        """Test that sessions idle past the TTL are evicted."""
        session = store.get_or_create("user-1")
        clock.advance(minutes=31)

        assert store.get("user-1", session.session_id) is None

    def test_active_session_survives(self, store, clock):
        """Test that touching a session keeps it alive."""
        session = store.get_or_create("user-1")
        clock.advance(minutes=20)
        store.record(session, make_query(), "resp_1")
        clock.advance(minutes=20)

        assert store.get("user-1", session.session_id) is session

    def test_cap_drops_least_recently_touched(self, store, clock):
        """Test that the oldest session beyond the cap is dropped."""
        first = store.get_or_create("user-1")
        clock.advance(minutes=1)
        second = store.get_or_create("user-1")
        clock.advance(minutes=1)
        store.get_or_create("user-1", first.session_id)
        clock.advance(minutes=1)
        third = store.get_or_create("user-1")

        ids = [s.session_id for s in store.list_for_owner("user-1")]
        assert ids == [third.session_id, first.session_id]
        assert second.session_id not in ids

    def test_cap_is_per_owner(self, store):
        """Test that other owners' sessions do not count toward the cap."""
        store.get_or_create("user-1")
        store.get_or_create("user-1")
        store.get_or_create("user-2")

        assert len(store.list_for_owner("user-1")) == 2
        assert len(store.list_for_owner("user-2")) == 1

    def test_evict_returns_count(self, store, clock):
        """Test evict reports how many sessions were dropped."""
        store.get_or_create("user-1")
        store.get_or_create("user-1")
        clock.advance(hours=1)

        assert store.evict("user-1") == 2
        assert store.list_for_owner("user-1") == []

    def test_expired_sessions_of_other_owners_purged(self, store, clock):
        """Test that any access drops idle sessions of owners who never return."""
        for i in range(1000):
            store.get_or_create(f"owner-{i}")
        clock.advance(hours=5)

        store.get_or_create("late-owner")

        assert len(store) == 1
        assert store.list_for_owner("owner-0") == []

    def test_purge_keeps_recent_sessions(self, store, clock):
        """Test that the purge stops at the first session still inside the TTL."""
        old = store.get_or_create("user-1")
        clock.advance(minutes=20)
        recent = store.get_or_create("user-2")
        clock.advance(minutes=15)

        assert store.evict("user-3") == 1
        assert store.get("user-1", old.session_id) is None
        assert store.get("user-2", recent.session_id) is recent
