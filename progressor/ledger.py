"""Time-entry ledger.

The ledger is the single source of truth for work sessions. It opens and
closes entries through the repository and answers range queries in start
order.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from .clock import ensure_utc
from .errors import ClockSkewError, ConflictError, InvalidStateError
from .models import TimeEntry
from .repository import Repository
from .tracker_logging import log_anomaly


logger = logging.getLogger("progressor.ledger")


def compute_duration(start: datetime, end: datetime) -> float:
    """Seconds between ``start`` and ``end``; a negative span is clock skew."""
    seconds = (end - start).total_seconds()
    if seconds < 0:
        raise ClockSkewError(
            f"Entry ends before it starts ({end.isoformat()} < {start.isoformat()})",
            start=start.isoformat(),
            end=end.isoformat(),
        )
    return seconds


class TimeEntryLedger:
    """Records start/stop sessions per card."""

    def __init__(self, repository: Repository):
        self.repository = repository

    def open_entry(self, card_id: int, start: datetime) -> TimeEntry:
        """Open a new session for ``card_id`` starting at ``start``."""
        start = ensure_utc(start)
        with self.repository.transaction():
            entries = self.repository.query_time_entries(card_id=card_id)
            if any(entry.is_open for entry in entries):
                raise ConflictError(f"Card '{card_id}' already has an open time entry", card_id=card_id)

            # Invalid entries count too, so the open entry stays the latest
            bounds = [entry.start_time for entry in entries]
            bounds += [entry.end_time for entry in entries if entry.end_time is not None]
            if bounds and start < max(bounds):
                raise ClockSkewError(
                    f"New entry for card '{card_id}' would start before the previous one ended",
                    card_id=card_id,
                    start=start.isoformat(),
                    previous_end=max(bounds).isoformat(),
                )

            entry = TimeEntry(card_id=card_id, start_time=start)
            self.repository.insert_time_entry(entry)

        logger.debug(f"Opened time entry {entry.id} for card {card_id}")
        return entry

    def close_entry(self, entry_id: int, end: datetime) -> TimeEntry:
        """Close an open entry at ``end``.

        When ``end`` precedes the start the entry is still closed, but it is
        flagged invalid, carries no duration, and is left out of every
        aggregate.
        """
        end = ensure_utc(end)
        with self.repository.transaction():
            entry = self.repository.get_time_entry(entry_id)
            if not entry.is_open:
                raise InvalidStateError(f"Time entry '{entry_id}' is already closed", entry_id=entry_id)

            try:
                duration: Optional[float] = compute_duration(entry.start_time, end)
                invalid = False
            except ClockSkewError as e:
                log_anomaly("clock_skew", entry_id=entry_id, card_id=entry.card_id, detail=e.message)
                duration = None
                invalid = True

            closed = self.repository.close_time_entry(entry_id, end, duration, invalid=invalid)

        logger.debug(f"Closed time entry {entry_id} for card {closed.card_id}")
        return closed

    def active_entry_for(self, card_id: int) -> Optional[TimeEntry]:
        for entry in reversed(self.repository.query_time_entries(card_id=card_id)):
            if entry.is_open:
                return entry
        return None

    def entries_for_card(self, card_id: int) -> List[TimeEntry]:
        return self.repository.query_time_entries(card_id=card_id)

    def entries_in_range(
        self,
        card_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user_id: Optional[int] = None,
    ) -> List[TimeEntry]:
        """Entries overlapping ``[start, end)`` ordered by start time."""
        return self.repository.query_time_entries(
            card_id=card_id,
            user_id=user_id,
            start=ensure_utc(start) if start else None,
            end=ensure_utc(end) if end else None,
        )

    def tracked_minutes_for(self, card_id: int) -> int:
        """Whole minutes across the card's valid closed entries."""
        return sum(
            entry.whole_minutes
            for entry in self.entries_for_card(card_id)
            if not entry.is_open and not entry.invalid
        )
