"""Lifecycle, selection and zombie-reaping tests for organism.opportunity."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from organism.models import Base, Event, Opportunity, Validation
from organism.opportunity import (
    InvalidTransition,
    TRANSITIONS,
    create_opportunity,
    current_status,
    history,
    kill_zombies,
    rank_candidates,
    rate,
    select_top,
    source_weight,
    status_counts,
    transition,
)
from organism.policy import StaticPolicy
from organism.utils import utcnow

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------

@pytest.fixture()
def factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(factory):
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def _opp(session, title="Idea", viability=50.0, source="reddit", url=None) -> Opportunity:
    opp, _ = create_opportunity(
        session, title=title, source=source, viability_score=viability, evidence_url=url,
    )
    session.commit()
    return opp


def _advance(session, opp_id, *statuses):
    for status in statuses:
        transition(session, opp_id, status)
    session.commit()


TO_BUILDING = ("reviewing", "queued_for_planning", "pursue", "building")


# =========================================================================
# Status projection and transitions
# =========================================================================

class TestTransitions:
    def test_new_opportunity_starts_new(self, session):
        opp = _opp(session)
        assert current_status(session, opp.id) == "new"

    def test_no_events_defaults_to_new(self, session):
        opp = Opportunity(title="Bare")
        session.add(opp)
        session.commit()
        assert current_status(session, opp.id) == "new"

    def test_full_happy_path(self, session):
        opp = _opp(session)
        _advance(session, opp.id, *TO_BUILDING, "shipped")
        assert current_status(session, opp.id) == "shipped"
        statuses = [e["new_status"] for e in history(session, opp.id)]
        assert statuses == ["new", *TO_BUILDING, "shipped"]

    def test_skipping_states_rejected(self, session):
        opp = _opp(session)
        with pytest.raises(InvalidTransition):
            transition(session, opp.id, "shipped")
        assert current_status(session, opp.id) == "new"

    def test_unknown_status_rejected(self, session):
        opp = _opp(session)
        with pytest.raises(InvalidTransition):
            transition(session, opp.id, "celebrating")

    def test_expected_status_mismatch(self, session):
        opp = _opp(session)
        _advance(session, opp.id, "reviewing")
        with pytest.raises(InvalidTransition) as exc_info:
            transition(session, opp.id, "queued_for_planning", expected="new")
        assert exc_info.value.current == "reviewing"

    def test_terminal_states_have_no_exits(self, session):
        for status in ("shipped", "killed", "discarded", "error"):
            assert TRANSITIONS[status] == frozenset()
        opp = _opp(session)
        _advance(session, opp.id, "reviewing", "error")
        with pytest.raises(InvalidTransition):
            transition(session, opp.id, "queued_for_planning")

    def test_every_recorded_path_is_valid(self, session):
        opp = _opp(session)
        _advance(session, opp.id, "reviewing", "queued_for_planning", "discarded")
        for event in history(session, opp.id)[1:]:
            assert event["new_status"] in TRANSITIONS[event["old_status"]]

    def test_invalid_transition_is_value_error(self):
        assert issubclass(InvalidTransition, ValueError)

    def test_status_counts(self, session):
        a = _opp(session, "A")
        _opp(session, "B")
        _advance(session, a.id, "reviewing")
        assert status_counts(session) == {"new": 1, "reviewing": 1}


class TestCreateAndRate:
    def test_duplicate_evidence_url_returns_existing(self, session):
        first = _opp(session, "First", url="https://example.com/post/1")
        again, created = create_opportunity(session, title="Again", evidence_url="https://example.com/post/1")
        assert created is False
        assert again.id == first.id

    def test_rating_does_not_touch_status(self, session):
        opp = _opp(session)
        rated = rate(session, opp.id, " Good ")
        session.commit()
        assert rated.rating == "good"
        assert rated.rated_at is not None
        assert current_status(session, opp.id) == "new"

    def test_clear_rating(self, session):
        opp = _opp(session)
        rate(session, opp.id, "bad")
        rate(session, opp.id, None)
        assert opp.rating is None
        assert opp.rated_at is None

    def test_invalid_rating(self, session):
        opp = _opp(session)
        with pytest.raises(ValueError):
            rate(session, opp.id, "meh")

    def test_rate_missing(self, session):
        assert rate(session, 999, "good") is None


# =========================================================================
# Selection
# =========================================================================

class TestSelection:
    def test_source_weight_substring_match(self):
        assert source_weight("reddit/r/SaaS", {"Reddit": 0.5}) == 0.5
        assert source_weight("hackernews", {"reddit": 0.5}) == 1.0
        assert source_weight("", {"reddit": 0.5}) == 1.0

    def test_source_weight_override_beats_raw_score(self, session):
        ids = {}
        for viability in (10, 80, 45, 90, 60):
            source = "sourceX" if viability == 90 else "forum"
            ids[viability] = _opp(session, f"V{viability}", viability, source).id
        policy = StaticPolicy({"source_weights": {"sourceX": 0.1}})

        picked = select_top(session, policy)

        assert picked.id == ids[80]
        assert picked.weighted_viability == pytest.approx(80.0)
        assert current_status(session, ids[80]) == "reviewing"
        assert current_status(session, ids[90]) == "new"

    def test_floor_excludes_low_scores(self, session):
        _opp(session, "Low", 10)
        assert select_top(session, StaticPolicy({"min_viability_score": 20})) is None

    def test_only_new_candidates(self, session):
        opp = _opp(session, "Busy", 95)
        _advance(session, opp.id, "reviewing")
        assert rank_candidates(session, StaticPolicy()) == []

    def test_ties_keep_store_order(self, session):
        first = _opp(session, "First", 50)
        _opp(session, "Second", 50)
        ranked = rank_candidates(session, StaticPolicy())
        assert ranked[0][0].id == first.id

    def test_select_twice_takes_next(self, session):
        best = _opp(session, "Best", 90)
        runner_up = _opp(session, "Runner-up", 70)
        policy = StaticPolicy()
        assert select_top(session, policy).id == best.id
        assert select_top(session, policy).id == runner_up.id
        assert select_top(session, policy) is None


# =========================================================================
# Zombie reaping
# =========================================================================

class TestKillZombies:
    def test_stale_building_is_killed_once(self, session):
        opp = _opp(session)
        _advance(session, opp.id, *TO_BUILDING)
        later = utcnow() + timedelta(days=6)
        policy = StaticPolicy({"zombie_kill_days": 5})

        assert kill_zombies(session, policy, later) == [opp.id]
        assert kill_zombies(session, policy, later) == []
        assert current_status(session, opp.id) == "killed"
        events = session.execute(select(Event).where(Event.type == "zombie_killed")).scalars().all()
        assert len(events) == 1

    def test_recent_building_survives(self, session):
        opp = _opp(session)
        _advance(session, opp.id, *TO_BUILDING)
        assert kill_zombies(session, StaticPolicy({"zombie_kill_days": 5})) == []
        assert current_status(session, opp.id) == "building"

    def test_converted_validation_is_never_a_zombie(self, session):
        opp = _opp(session)
        _advance(session, opp.id, *TO_BUILDING)
        session.add(Validation(
            opportunity_id=opp.id, status="converted", window_ends_at=utcnow(),
        ))
        session.commit()
        later = utcnow() + timedelta(days=30)
        assert kill_zombies(session, StaticPolicy({"zombie_kill_days": 5}), later) == []
        assert current_status(session, opp.id) == "building"

    def test_nothing_building(self, session):
        _opp(session)
        assert kill_zombies(session, StaticPolicy(), utcnow() + timedelta(days=30)) == []
