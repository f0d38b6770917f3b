"""Unit tests for tracked-time statistics."""

import pytest
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from progressor.clock import ManualClock
from progressor.errors import ValidationError
from progressor.ledger import TimeEntryLedger
from progressor.models import Card, Project, TimeEntry
from progressor.stats import StatsAggregator, parse_month


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _session(repo, card_id, start, minutes):
    entry = TimeEntry(card_id=card_id, start_time=start)
    entry_id = repo.insert_time_entry(entry)
    repo.close_time_entry(entry_id, start + timedelta(minutes=minutes), minutes * 60.0)
    return entry_id


@pytest.fixture
def card(repo):
    return repo.save_card(Card(title="Tracked"))


@pytest.fixture
def stats_clock():
    return ManualClock(_utc(2024, 3, 20, 12, 0))


@pytest.fixture
def stats(repo, stats_clock):
    return StatsAggregator(repo, clock=stats_clock)


class TestParseMonth:
    """Test cases for parse_month."""

    def test_accepted_forms(self):
        """Test string, date and tuple months."""
        assert parse_month("2024-03") == (2024, 3)
        assert parse_month(date(2024, 3, 9)) == (2024, 3)
        assert parse_month((2024, 12)) == (2024, 12)

    @pytest.mark.parametrize("value", ["2024-13", "March", "2024/03", (2024, 0), 202403])
    def test_rejected_forms(self, value):
        """Test malformed months raise ValidationError."""
        with pytest.raises(ValidationError):
            parse_month(value)


class TestDailyTotals:
    """Test cases for daily totals."""

    def test_zero_filled_month(self, stats):
        """Test every day of the month is present."""
        totals = stats.daily_totals(1, "2024-02")

        assert len(totals) == 29
        assert totals[0].date == date(2024, 2, 1)
        assert all(t.total_minutes == 0 for t in totals)

    def test_sessions_on_one_day(self, repo, card, stats):
        """Test two sessions on the 15th add up."""
        _session(repo, card.id, _utc(2024, 3, 15, 9, 0), 10)
        _session(repo, card.id, _utc(2024, 3, 15, 14, 0), 20)

        totals = {t.date: t.total_minutes for t in stats.daily_totals(1, "2024-03")}

        assert totals[date(2024, 3, 15)] == 30
        assert sum(totals.values()) == 30

    def test_midnight_split(self, repo, card, stats):
        """Test a session across midnight counts toward both days."""
        _session(repo, card.id, _utc(2024, 3, 15, 23, 30), 60)

        totals = {t.date: t.total_minutes for t in stats.daily_totals(1, "2024-03")}

        assert totals[date(2024, 3, 15)] == 30
        assert totals[date(2024, 3, 16)] == 30

    def test_month_boundary_clipped(self, repo, card, stats):
        """Test only the in-month part of a boundary session counts."""
        _session(repo, card.id, _utc(2024, 2, 29, 23, 0), 120)

        march = stats.daily_totals(1, "2024-03")
        february = stats.daily_totals(1, "2024-02")

        assert march[0].total_minutes == 60
        assert february[-1].total_minutes == 60

    def test_local_timezone_buckets(self, repo, card, stats_clock):
        """Test days follow the configured timezone."""
        stats = StatsAggregator(repo, clock=stats_clock, tz=ZoneInfo("America/New_York"))
        # 02:00 UTC on the 16th is 22:00 on the 15th in New York (EDT)
        _session(repo, card.id, _utc(2024, 3, 16, 2, 0), 30)

        totals = {t.date: t.total_minutes for t in stats.daily_totals(1, "2024-03")}

        assert totals[date(2024, 3, 15)] == 30
        assert totals[date(2024, 3, 16)] == 0

    def test_open_entry_counts_up_to_now(self, repo, card, stats, stats_clock):
        """Test the running session counts until the reference time."""
        repo.insert_time_entry(TimeEntry(card_id=card.id, start_time=stats_clock.now() - timedelta(minutes=45)))

        totals = {t.date: t.total_minutes for t in stats.daily_totals(1, "2024-03")}

        assert totals[date(2024, 3, 20)] == 45

    def test_each_day_floored_separately(self, repo, card, stats):
        """Test partial minutes on either side of midnight are dropped per day."""
        start = _utc(2024, 3, 14, 23, 59, 30)
        entry_id = repo.insert_time_entry(TimeEntry(card_id=card.id, start_time=start))
        repo.close_time_entry(entry_id, start + timedelta(minutes=1), 60.0)
        _session(repo, card.id, _utc(2024, 3, 15, 10, 0, 30), 2)

        totals = {t.date: t.total_minutes for t in stats.daily_totals(1, "2024-03")}

        assert totals[date(2024, 3, 14)] == 0
        assert totals[date(2024, 3, 15)] == 2

    def test_invalid_entries_skipped(self, repo, card, stats):
        """Test skewed entries do not count."""
        entry_id = repo.insert_time_entry(TimeEntry(card_id=card.id, start_time=_utc(2024, 3, 15, 10, 0)))
        repo.close_time_entry(entry_id, _utc(2024, 3, 15, 9, 0), None, invalid=True)

        assert sum(t.total_minutes for t in stats.daily_totals(1, "2024-03")) == 0

    def test_other_users_excluded(self, repo, card, stats):
        """Test totals are per user."""
        other = repo.save_card(Card(title="Other", user_id=2))
        _session(repo, other.id, _utc(2024, 3, 15, 9, 0), 40)

        assert sum(t.total_minutes for t in stats.daily_totals(1, "2024-03")) == 0
        assert sum(t.total_minutes for t in stats.daily_totals(2, "2024-03")) == 40


class TestTrailingWindows:
    """Test cases for week, month and year hours."""

    def test_windows(self, repo, card, stats, stats_clock):
        """Test each window only counts what falls inside it."""
        now = stats_clock.now()
        _session(repo, card.id, now - timedelta(days=2), 60)
        _session(repo, card.id, now - timedelta(days=20), 120)
        _session(repo, card.id, now - timedelta(days=200), 180)
        _session(repo, card.id, now - timedelta(days=400), 240)

        result = stats.get_stats(1)

        assert result.week_hours == pytest.approx(1.0)
        assert result.month_hours == pytest.approx(3.0)
        assert result.year_hours == pytest.approx(6.0)
        assert stats.weekly_hours(1) == pytest.approx(1.0)

    def test_window_clips_partial_entry(self, repo, card, stats, stats_clock):
        """Test an entry straddling the window start counts partially."""
        start = stats_clock.now() - timedelta(days=7, minutes=30)
        _session(repo, card.id, start, 90)

        assert stats.weekly_hours(1) == pytest.approx(1.0)

    def test_live_open_entry(self, repo, card, stats, stats_clock):
        """Test the running session counts in a live query."""
        repo.insert_time_entry(TimeEntry(card_id=card.id, start_time=stats_clock.now() - timedelta(minutes=30)))

        assert stats.weekly_hours(1) == pytest.approx(0.5)

    def test_historical_query_excludes_open_entry(self, repo, card, stats, stats_clock):
        """Test past reference times ignore open sessions."""
        now = stats_clock.now()
        _session(repo, card.id, now - timedelta(days=3), 60)
        repo.insert_time_entry(TimeEntry(card_id=card.id, start_time=now - timedelta(days=1)))

        assert stats.weekly_hours(1, as_of=now - timedelta(hours=1)) == pytest.approx(1.0)
        assert stats.weekly_hours(1, as_of=now) == pytest.approx(25.0)

    def test_idempotent_without_writes(self, repo, card, stats, stats_clock):
        """Test repeated queries agree when nothing changes."""
        _session(repo, card.id, stats_clock.now() - timedelta(days=1), 33)

        assert stats.get_stats(1) == stats.get_stats(1)

    def test_empty_user(self, stats):
        """Test no data means zero hours."""
        result = stats.get_stats(1)
        assert (result.week_hours, result.month_hours, result.year_hours) == (0.0, 0.0, 0.0)


class TestTotals:
    """Test cases for per-user and per-project totals."""

    def test_user_total_minutes(self, repo, card):
        """Test whole minutes per entry are summed."""
        _session(repo, card.id, _utc(2024, 3, 1, 9, 0), 15)
        entry_id = repo.insert_time_entry(TimeEntry(card_id=card.id, start_time=_utc(2024, 3, 2, 9, 0)))
        repo.close_time_entry(entry_id, _utc(2024, 3, 2, 9, 0, 59), 59.0)

        stats = StatsAggregator(repo, clock=ManualClock(_utc(2024, 3, 3)), ledger=TimeEntryLedger(repo))
        assert stats.user_total_minutes(1) == 15

    def test_project_totals(self, repo, stats):
        """Test minutes grouped by project."""
        project = repo.save_project(Project(name="P"))
        in_project = repo.save_card(Card(title="in", project_id=project.id))
        loose = repo.save_card(Card(title="loose"))
        _session(repo, in_project.id, _utc(2024, 3, 1, 9, 0), 25)
        _session(repo, loose.id, _utc(2024, 3, 1, 11, 0), 5)

        assert stats.project_totals(1) == {project.id: 25, None: 5}
