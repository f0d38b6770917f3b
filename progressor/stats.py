"""Tracked-time rollups.

The aggregator only reads: every figure is a fold over ledger entries plus
the reference time. Entries that cannot be trusted (clock skew) are skipped
and logged, never allowed to fail a whole query.

Entries that cross midnight are split at day boundaries of the configured
timezone; each part counts toward its own day.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .clock import Clock, SystemClock, ensure_utc
from .errors import ValidationError
from .ledger import TimeEntryLedger
from .models import DEFAULT_USER_ID, DailyTotal, StatsResult, TimeEntry
from .repository import Repository
from .tracker_logging import log_anomaly, log_performance


logger = logging.getLogger("progressor.stats")

WEEK = timedelta(days=7)
MONTH = timedelta(days=30)
YEAR = timedelta(days=365)

MonthSpec = Union[str, date, Tuple[int, int]]
Span = Tuple[datetime, datetime]


def parse_month(month: MonthSpec) -> Tuple[int, int]:
    """Accept ``"YYYY-MM"``, a ``date``/``datetime`` or a ``(year, month)`` pair."""
    if isinstance(month, date):
        return month.year, month.month
    if isinstance(month, tuple) and len(month) == 2:
        year, number = month
    elif isinstance(month, str):
        parts = month.strip().split("-")
        if len(parts) != 2 or not all(part.isdigit() for part in parts):
            raise ValidationError(f"Month must look like 'YYYY-MM', got: {month!r}")
        year, number = int(parts[0]), int(parts[1])
    else:
        raise ValidationError(f"Unsupported month value: {month!r}")
    if not 1 <= number <= 12 or not 1 <= year <= 9999:
        raise ValidationError(f"Month out of range: {month!r}")
    return year, number


class StatsAggregator:
    """Daily, weekly, monthly and yearly totals of tracked time."""

    def __init__(
        self,
        repository: Repository,
        clock: Optional[Clock] = None,
        tz: Optional[tzinfo] = None,
        ledger: Optional[TimeEntryLedger] = None,
    ):
        self.repository = repository
        self.clock = clock or SystemClock()
        self.tz = tz or timezone.utc
        self.ledger = ledger or TimeEntryLedger(repository)

    # ------------------------------------------------------------------
    # Entry handling
    # ------------------------------------------------------------------

    def _span(self, entry: TimeEntry, now: datetime, live: bool) -> Optional[Span]:
        """Usable ``(start, end)`` of an entry, or None when it must be skipped."""
        if entry.invalid:
            log_anomaly("invalid_time_entry", entry_id=entry.id, card_id=entry.card_id)
            return None
        if entry.is_open:
            if not live:
                return None
            if now < entry.start_time:
                log_anomaly("open_entry_in_future", entry_id=entry.id, card_id=entry.card_id)
                return None
            return entry.start_time, now
        if entry.end_time < entry.start_time:
            log_anomaly("negative_duration", entry_id=entry.id, card_id=entry.card_id)
            return None
        return entry.start_time, entry.end_time

    def _spans(
        self,
        user_id: int,
        start: datetime,
        end: datetime,
        now: datetime,
        live: bool,
    ) -> Iterable[Tuple[TimeEntry, Span]]:
        for entry in self.ledger.entries_in_range(user_id=user_id, start=start, end=end):
            span = self._span(entry, now, live)
            if span is None:
                continue
            lo, hi = max(span[0], start), min(span[1], end)
            if hi > lo:
                yield entry, (lo, hi)

    def _resolve_as_of(self, as_of: Optional[datetime]) -> Tuple[datetime, datetime, bool]:
        now = self.clock.now()
        if as_of is None:
            return now, now, True
        as_of = ensure_utc(as_of)
        return as_of, now, as_of >= now

    # ------------------------------------------------------------------
    # Trailing windows
    # ------------------------------------------------------------------

    def hours_in_window(self, user_id: int, window: timedelta, as_of: Optional[datetime] = None) -> float:
        """Fractional hours tracked during the ``window`` ending at ``as_of``."""
        as_of, now, live = self._resolve_as_of(as_of)
        return self._hours(user_id, window, as_of, now, live)

    def _hours(self, user_id: int, window: timedelta, as_of: datetime, now: datetime, live: bool) -> float:
        seconds = 0.0
        for _, (lo, hi) in self._spans(user_id, as_of - window, as_of, now, live):
            seconds += (hi - lo).total_seconds()
        return seconds / 3600.0

    def weekly_hours(self, user_id: int = DEFAULT_USER_ID, as_of: Optional[datetime] = None) -> float:
        return self.hours_in_window(user_id, WEEK, as_of)

    def monthly_hours(self, user_id: int = DEFAULT_USER_ID, as_of: Optional[datetime] = None) -> float:
        return self.hours_in_window(user_id, MONTH, as_of)

    def yearly_hours(self, user_id: int = DEFAULT_USER_ID, as_of: Optional[datetime] = None) -> float:
        return self.hours_in_window(user_id, YEAR, as_of)

    @log_performance("get_stats")
    def get_stats(self, user_id: int = DEFAULT_USER_ID, as_of: Optional[datetime] = None) -> StatsResult:
        # One reference time for all three windows
        as_of, now, live = self._resolve_as_of(as_of)
        return StatsResult(
            week_hours=self._hours(user_id, WEEK, as_of, now, live),
            month_hours=self._hours(user_id, MONTH, as_of, now, live),
            year_hours=self._hours(user_id, YEAR, as_of, now, live),
        )

    # ------------------------------------------------------------------
    # Calendar buckets
    # ------------------------------------------------------------------

    def _local_midnight(self, day: date) -> datetime:
        return datetime.combine(day, time(), tzinfo=self.tz).astimezone(timezone.utc)

    @log_performance("daily_totals")
    def daily_totals(self, user_id: int, month: MonthSpec) -> List[DailyTotal]:
        """One total per calendar day of ``month``, zero-filled.

        Sessions are split at local midnight and each day's seconds are
        floored to whole minutes independently. A one-minute session that
        straddles midnight by thirty seconds on each side therefore adds
        nothing to either day, while the card's tracked minutes gain one.
        """
        year, number = parse_month(month)
        days_in_month = calendar.monthrange(year, number)[1]
        first = date(year, number, 1)
        after = first + timedelta(days=days_in_month)
        month_start = self._local_midnight(first)
        month_end = self._local_midnight(after)

        seconds: Dict[date, float] = {first + timedelta(days=i): 0.0 for i in range(days_in_month)}
        now = self.clock.now()
        for _, (lo, hi) in self._spans(user_id, month_start, month_end, now, live=True):
            cursor = lo
            while cursor < hi:
                local_day = cursor.astimezone(self.tz).date()
                boundary = min(self._local_midnight(local_day + timedelta(days=1)), hi)
                if local_day in seconds:
                    seconds[local_day] += (boundary - cursor).total_seconds()
                cursor = boundary

        return [DailyTotal(date=day, total_minutes=int(total // 60)) for day, total in sorted(seconds.items())]

    # ------------------------------------------------------------------
    # Per-user totals
    # ------------------------------------------------------------------

    def user_total_minutes(self, user_id: int = DEFAULT_USER_ID) -> int:
        """Whole minutes over every valid closed entry of the user."""
        total = 0
        for entry in self.ledger.entries_in_range(user_id=user_id):
            if entry.is_open:
                continue
            if entry.invalid:
                log_anomaly("invalid_time_entry", entry_id=entry.id, card_id=entry.card_id)
                continue
            total += entry.whole_minutes
        return total

    def project_totals(
        self,
        user_id: int = DEFAULT_USER_ID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[Optional[int], int]:
        """Minutes per project (None for cards without one) over closed entries."""
        lo_bound = ensure_utc(start) if start else datetime.min.replace(tzinfo=timezone.utc)
        hi_bound = ensure_utc(end) if end else datetime.max.replace(tzinfo=timezone.utc)
        now = self.clock.now()

        project_of: Dict[int, Optional[int]] = {
            card.id: card.project_id for card in self.repository.list_cards(user_id=user_id)
        }
        seconds: Dict[Optional[int], float] = {}
        for entry, (lo, hi) in self._spans(user_id, lo_bound, hi_bound, now, live=False):
            project_id = project_of.get(entry.card_id)
            seconds[project_id] = seconds.get(project_id, 0.0) + (hi - lo).total_seconds()
        return {project_id: int(total // 60) for project_id, total in seconds.items()}
