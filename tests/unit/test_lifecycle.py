"""Unit tests for the card lifecycle state machine.

This module tests starting, stopping, completing and editing cards, the
single-active-card rule, and the events published along the way.
"""

import pytest
import threading
from datetime import timedelta

from progressor.errors import ClockSkewError, ConflictError, InvalidStateError, NotFoundError, ValidationError
from progressor.ledger import TimeEntryLedger
from progressor.lifecycle import CardLifecycle
from progressor.models import CardStatus
from progressor.skills import SkillProgression
from progressor.tracker_logging import CARD_COMPLETED, CARD_STARTED, CARD_STOPPED, ObservabilityHooks


@pytest.fixture
def hooks():
    return ObservabilityHooks()


@pytest.fixture
def lifecycle(repo, clock, hooks):
    return CardLifecycle(repo, clock=clock, hooks=hooks)


@pytest.fixture
def events(hooks):
    received = []
    for event_type in (CARD_STARTED, CARD_STOPPED, CARD_COMPLETED):
        hooks.register_hook(event_type, lambda _type=event_type, **data: received.append((_type, data)))
    return received


class TestCreateAndUpdate:
    """Test cases for creating and editing cards."""

    def test_create_card(self, lifecycle, clock):
        """Test a new card starts open with timestamps set."""
        card = lifecycle.create_card("  Write tests  ", estimated_minutes=30)

        assert card.id == 1
        assert card.title == "Write tests"
        assert card.status is CardStatus.OPEN
        assert card.created_at == clock.now()

    @pytest.mark.parametrize("title", ["", "   "])
    def test_create_requires_title(self, lifecycle, title):
        """Test blank titles are rejected."""
        with pytest.raises(ValidationError):
            lifecycle.create_card(title)

    @pytest.mark.parametrize("estimate", [-5, 2.5, "30"])
    def test_create_rejects_bad_estimate(self, lifecycle, estimate):
        """Test estimates must be non-negative integers."""
        with pytest.raises(ValidationError):
            lifecycle.create_card("x", estimated_minutes=estimate)

    def test_create_with_unknown_project(self, lifecycle):
        """Test cards cannot point at missing projects."""
        with pytest.raises(NotFoundError):
            lifecycle.create_card("x", project_id=3)

    def test_update_fields(self, lifecycle):
        """Test editing title, description and estimate."""
        card = lifecycle.create_card("Old")

        updated = lifecycle.update(card.id, {"title": "New", "description": "d", "estimated_minutes": 45})

        assert (updated.title, updated.description, updated.estimated_minutes) == ("New", "d", 45)
        assert lifecycle.get_card(card.id).title == "New"

    def test_update_rejects_unknown_and_empty(self, lifecycle):
        """Test only editable fields can be changed."""
        card = lifecycle.create_card("x")

        with pytest.raises(ValidationError):
            lifecycle.update(card.id, {"tracked_minutes": 500})
        with pytest.raises(ValidationError):
            lifecycle.update(card.id, {})
        with pytest.raises(ValidationError):
            lifecycle.update(card.id, {"title": " "})

    def test_update_done_card(self, lifecycle):
        """Test done cards are frozen."""
        card = lifecycle.create_card("x")
        lifecycle.complete(card.id)

        with pytest.raises(InvalidStateError):
            lifecycle.update(card.id, {"title": "y"})


class TestStartStop:
    """Test cases for tracking time on cards."""

    def test_start_and_stop(self, lifecycle, clock):
        """Test a basic session adds whole minutes."""
        card = lifecycle.create_card("x")

        started = lifecycle.start(card.id)
        assert started.card.is_active
        assert started.card.status is CardStatus.IN_PROGRESS
        assert started.entry.is_open

        clock.advance(minutes=10, seconds=59)
        stopped = lifecycle.stop(card.id)

        assert stopped.minutes_added == 10
        assert stopped.card.tracked_minutes == 10
        assert stopped.card.is_active is False
        assert stopped.card.status is CardStatus.IN_PROGRESS

    def test_start_active_card_is_noop(self, lifecycle, clock):
        """Test starting a running card changes nothing."""
        card = lifecycle.create_card("x")
        first = lifecycle.start(card.id)
        clock.advance(minutes=5)

        again = lifecycle.start(card.id)

        assert again.noop is True
        assert again.entry.id == first.entry.id
        assert len(lifecycle.ledger.entries_for_card(card.id)) == 1

    def test_start_pauses_other_card(self, lifecycle, clock, events):
        """Test starting B stops A and credits A's minutes."""
        a = lifecycle.create_card("A")
        b = lifecycle.create_card("B")
        lifecycle.start(a.id)
        clock.advance(minutes=20)

        result = lifecycle.start(b.id)

        assert result.auto_stopped.card.id == a.id
        assert result.auto_stopped.minutes_added == 20
        assert lifecycle.get_card(a.id).is_active is False
        assert lifecycle.get_card(a.id).tracked_minutes == 20
        assert lifecycle.get_active_card().id == b.id
        assert [e[0] for e in events] == [CARD_STARTED, CARD_STOPPED, CARD_STARTED]

    def test_stop_inactive_card(self, lifecycle, repo):
        """Test stopping a card that is not running."""
        card = lifecycle.create_card("x")
        before = repo.get_card(card.id)

        with pytest.raises(InvalidStateError):
            lifecycle.stop(card.id)
        assert repo.get_card(card.id) == before

    def test_stop_without_open_entry(self, lifecycle, repo):
        """Test an active card missing its entry is reported, not patched."""
        card = lifecycle.create_card("x")
        lifecycle.start(card.id)
        entry = lifecycle.ledger.active_entry_for(card.id)
        repo.close_time_entry(entry.id, entry.start_time, 0.0)
        before = repo.get_card(card.id)

        with pytest.raises(InvalidStateError):
            lifecycle.stop(card.id)
        assert repo.get_card(card.id) == before

    def test_start_done_card(self, lifecycle):
        """Test done cards cannot be started."""
        card = lifecycle.create_card("x")
        lifecycle.complete(card.id)

        with pytest.raises(InvalidStateError):
            lifecycle.start(card.id)

    def test_start_unknown_card(self, lifecycle):
        """Test unknown ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            lifecycle.start(404)

    def test_clock_skew_on_stop(self, lifecycle, clock):
        """Test a clock that moved backwards adds nothing."""
        card = lifecycle.create_card("x")
        lifecycle.start(card.id)
        clock.advance(minutes=-5)

        result = lifecycle.stop(card.id)

        assert result.clock_skew is True
        assert result.minutes_added == 0
        assert result.entry.invalid is True

    def test_clock_skew_on_start_rolls_back(self, lifecycle, clock):
        """Test a start before the last session ended leaves state unchanged."""
        a = lifecycle.create_card("A")
        b = lifecycle.create_card("B")
        lifecycle.start(a.id)
        clock.advance(minutes=30)
        lifecycle.stop(a.id)
        lifecycle.start(b.id)
        clock.advance(minutes=-20)

        with pytest.raises(ClockSkewError):
            lifecycle.start(a.id)

        assert lifecycle.get_active_card().id == b.id
        assert lifecycle.get_card(a.id).is_active is False
        assert lifecycle.ledger.active_entry_for(b.id) is not None

    def test_concurrent_starts_leave_one_active(self, lifecycle):
        """Test racing starts never produce two active cards."""
        cards = [lifecycle.create_card(f"card {i}") for i in range(8)]
        errors = []

        def worker(card_id):
            try:
                lifecycle.start(card_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(c.id,)) for c in cards]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        active = lifecycle.list_cards()
        assert sum(1 for c in active if c.is_active) == 1
        open_entries = [
            e for c in cards for e in lifecycle.ledger.entries_for_card(c.id) if e.is_open
        ]
        assert len(open_entries) == 1


class TestComplete:
    """Test cases for completing and reopening cards."""

    def test_complete_active_card(self, lifecycle, clock, events):
        """Test completing stops the timer first."""
        card = lifecycle.create_card("x", estimated_minutes=60)
        lifecycle.start(card.id)
        clock.advance(minutes=50)

        result = lifecycle.complete(card.id)

        assert result.card.status is CardStatus.DONE
        assert result.card.completed_at == clock.now()
        assert result.card.is_active is False
        assert result.stopped.minutes_added == 50
        assert result.stopped.card.status is CardStatus.IN_PROGRESS
        assert [e[0] for e in events][-2:] == [CARD_STOPPED, CARD_COMPLETED]
        assert events[-1][1]["experience"] == 0

    def test_complete_twice(self, lifecycle):
        """Test completing a done card."""
        card = lifecycle.create_card("x")
        lifecycle.complete(card.id)

        with pytest.raises(InvalidStateError):
            lifecycle.complete(card.id)

    def test_complete_awards_project_skills(self, repo, clock, hooks):
        """Test completion feeds skill experience."""
        progression = SkillProgression(repo, clock=clock)
        lifecycle = CardLifecycle(repo, progression=progression, clock=clock, hooks=hooks)
        project = progression.create_project("P")
        skill = progression.create_skill("S")
        progression.link_skill(project.id, skill.id)
        card = lifecycle.create_card("x", estimated_minutes=60, project_id=project.id)
        lifecycle.start(card.id)
        clock.advance(minutes=50)

        result = lifecycle.complete(card.id)

        assert result.to_dict()["experience_awarded"] == 60
        assert repo.get_skill(skill.id).experience == 60

    def test_reopen(self, lifecycle, clock):
        """Test reopen restores a working status without a second award."""
        untouched = lifecycle.create_card("untouched")
        tracked = lifecycle.create_card("tracked")
        lifecycle.start(tracked.id)
        clock.advance(minutes=5)
        lifecycle.complete(untouched.id)
        lifecycle.complete(tracked.id)

        assert lifecycle.reopen(untouched.id).status is CardStatus.OPEN
        reopened = lifecycle.reopen(tracked.id)
        assert reopened.status is CardStatus.IN_PROGRESS
        assert reopened.completed_at is None

        lifecycle.complete(tracked.id)
        assert lifecycle.progression.total_user_experience() == 5

    def test_reopen_requires_done(self, lifecycle):
        """Test reopening a card that is not done."""
        card = lifecycle.create_card("x")
        with pytest.raises(InvalidStateError):
            lifecycle.reopen(card.id)


class TestDeleteAndMaintenance:
    """Test cases for delete, cleanup and reconcile."""

    def test_delete_cascades_entries(self, lifecycle, clock):
        """Test deleting a card removes its entries."""
        card = lifecycle.create_card("x")
        lifecycle.start(card.id)
        clock.advance(minutes=3)
        lifecycle.stop(card.id)

        assert lifecycle.delete(card.id) == 1
        with pytest.raises(NotFoundError):
            lifecycle.get_card(card.id)

    def test_delete_active_card(self, lifecycle):
        """Test running cards must be stopped before deletion."""
        card = lifecycle.create_card("x")
        lifecycle.start(card.id)

        with pytest.raises(InvalidStateError):
            lifecycle.delete(card.id)

    def test_delete_reject_policy(self, repo, clock, hooks):
        """Test the reject policy keeps cards that have history."""
        lifecycle = CardLifecycle(repo, clock=clock, delete_policy="reject", hooks=hooks)
        empty = lifecycle.create_card("empty")
        used = lifecycle.create_card("used")
        lifecycle.start(used.id)
        lifecycle.stop(used.id)

        assert lifecycle.delete(empty.id) == 0
        with pytest.raises(ConflictError):
            lifecycle.delete(used.id)
        assert lifecycle.get_card(used.id).title == "used"

    def test_cleanup(self, lifecycle, clock):
        """Test cleanup stops the running card, if any."""
        assert lifecycle.cleanup() is None

        card = lifecycle.create_card("x")
        lifecycle.start(card.id)
        clock.advance(minutes=7)

        result = lifecycle.cleanup()

        assert result.minutes_added == 7
        assert lifecycle.get_active_card() is None

    def test_reconcile_repairs_drift(self, lifecycle, repo, clock):
        """Test cached minutes are rebuilt from the ledger."""
        card = lifecycle.create_card("x")
        lifecycle.start(card.id)
        clock.advance(minutes=12)
        lifecycle.stop(card.id)
        stored = repo.get_card(card.id)
        stored.tracked_minutes = 99
        repo.save_card(stored)

        assert lifecycle.reconcile(card.id).tracked_minutes == 12
        assert repo.get_card(card.id).tracked_minutes == 12

    def test_tracked_minutes_match_ledger(self, repo, clock, hooks):
        """Test the cached total equals the ledger sum after many sessions."""
        ledger = TimeEntryLedger(repo)
        lifecycle = CardLifecycle(repo, ledger=ledger, clock=clock, hooks=hooks)
        card = lifecycle.create_card("x")
        for seconds in (59, 61, 600, 3599):
            lifecycle.start(card.id)
            clock.advance(seconds=seconds)
            lifecycle.stop(card.id)

        assert lifecycle.get_card(card.id).tracked_minutes == ledger.tracked_minutes_for(card.id) == 0 + 1 + 10 + 59
