"""Card lifecycle state machine.

Cards move ``open -> in_progress -> done``. While in progress a card is
either active (its timer is running) or paused. At most one card is active
at any time; starting a card pauses whichever card was running before.

All mutations run under one lock and one repository transaction, so the
"which card is active" check-and-set cannot interleave and a failed
operation leaves nothing half-written.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .clock import Clock, SystemClock
from .errors import ConflictError, InvalidStateError, ValidationError
from .ledger import TimeEntryLedger
from .models import (
    DEFAULT_USER_ID,
    Card,
    CardStatus,
    CompletionResult,
    StartResult,
    StopResult,
)
from .repository import Repository
from .skills import SkillProgression
from .tracker_logging import (
    CARD_COMPLETED,
    CARD_STARTED,
    CARD_STOPPED,
    ObservabilityHooks,
    log_performance,
    observability_hooks,
)


logger = logging.getLogger("progressor.lifecycle")

UPDATABLE_FIELDS = ("title", "description", "estimated_minutes")


class CardLifecycle:
    """Start, stop, complete and edit cards."""

    def __init__(
        self,
        repository: Repository,
        ledger: Optional[TimeEntryLedger] = None,
        progression: Optional[SkillProgression] = None,
        clock: Optional[Clock] = None,
        delete_policy: str = "cascade",
        hooks: Optional[ObservabilityHooks] = None,
    ):
        self.repository = repository
        self.clock = clock or SystemClock()
        self.ledger = ledger or TimeEntryLedger(repository)
        self.progression = progression or SkillProgression(repository, clock=self.clock)
        self.delete_policy = delete_policy
        self.hooks = hooks or observability_hooks
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_card(self, card_id: int) -> Card:
        return self.repository.get_card(card_id)

    def list_cards(
        self,
        user_id: Optional[int] = None,
        status: Optional[CardStatus] = None,
        project_id: Optional[int] = None,
    ) -> List[Card]:
        return self.repository.list_cards(user_id=user_id, status=status, project_id=project_id)

    def get_active_card(self) -> Optional[Card]:
        return self.repository.get_active_card()

    # ------------------------------------------------------------------
    # Creation and edits
    # ------------------------------------------------------------------

    def create_card(
        self,
        title: str,
        estimated_minutes: int = 0,
        description: Optional[str] = None,
        project_id: Optional[int] = None,
        user_id: int = DEFAULT_USER_ID,
    ) -> Card:
        if not title or not title.strip():
            raise ValidationError("Card title is required")
        _check_estimate(estimated_minutes)

        now = self.clock.now()
        card = Card(
            title=title.strip(),
            description=description or None,
            estimated_minutes=estimated_minutes,
            project_id=project_id,
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )
        self.repository.save_card(card)
        logger.info(f"Created card {card.id} '{card.title}'")
        return card

    @log_performance("update_card")
    def update(self, card_id: int, fields: Mapping[str, Any]) -> Card:
        """Change title, description or estimate of a card that is not done."""
        unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}", fields=unknown)
        if not fields:
            raise ValidationError("No fields to update")

        with self._lock, self.repository.transaction():
            card = self.repository.get_card(card_id)
            if card.is_done:
                raise InvalidStateError(f"Card '{card_id}' is done and can no longer be edited", card_id=card_id)

            if "title" in fields:
                title = fields["title"]
                if not isinstance(title, str) or not title.strip():
                    raise ValidationError("Card title is required")
                card.title = title.strip()
            if "description" in fields:
                card.description = fields["description"] or None
            if "estimated_minutes" in fields:
                _check_estimate(fields["estimated_minutes"])
                card.estimated_minutes = fields["estimated_minutes"]

            card.updated_at = self.clock.now()
            self.repository.save_card(card)

        logger.info(f"Updated card {card_id}: {', '.join(sorted(fields))}")
        return card

    @log_performance("delete_card")
    def delete(self, card_id: int) -> int:
        """Delete a card; returns how many time entries went with it."""
        with self._lock, self.repository.transaction():
            card = self.repository.get_card(card_id)
            if card.is_active:
                raise InvalidStateError(f"Card '{card_id}' is being tracked; stop it first", card_id=card_id)

            removed = 0
            if self.ledger.entries_for_card(card_id):
                if self.delete_policy != "cascade":
                    raise ConflictError(
                        f"Card '{card_id}' has time entries and the delete policy is '{self.delete_policy}'",
                        card_id=card_id,
                    )
                removed = self.repository.delete_time_entries(card_id)
            self.repository.delete_card(card_id)

        logger.info(f"Deleted card {card_id} with {removed} time entries")
        return removed

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    @log_performance("start_card")
    def start(self, card_id: int) -> StartResult:
        events: List[Tuple[str, Dict[str, Any]]] = []
        with self._lock, self.repository.transaction():
            card = self.repository.get_card(card_id)
            if card.is_active:
                logger.info(f"Card {card_id} is already being tracked")
                return StartResult(card=card, entry=self.ledger.active_entry_for(card_id), noop=True)
            if card.is_done:
                raise InvalidStateError(f"Card '{card_id}' is done and cannot be started", card_id=card_id)

            auto_stopped = None
            active = self.repository.get_active_card()
            if active is not None:
                auto_stopped = self._stop_locked(active)
                events.append((CARD_STOPPED, self._stopped_payload(auto_stopped)))
                logger.info(f"Paused card {active.id} to start card {card_id}")

            now = self.clock.now()
            entry = self.ledger.open_entry(card_id, now)
            card.is_active = True
            if card.status is CardStatus.OPEN:
                card.status = CardStatus.IN_PROGRESS
            card.updated_at = now
            self.repository.save_card(card)
            events.append((CARD_STARTED, {
                "card_id": card.id,
                "project_id": card.project_id,
                "user_id": card.user_id,
                "started_at": now.isoformat(),
            }))

        self._publish(events)
        return StartResult(card=card, entry=entry, auto_stopped=auto_stopped)

    @log_performance("stop_card")
    def stop(self, card_id: int) -> StopResult:
        with self._lock, self.repository.transaction():
            card = self.repository.get_card(card_id)
            result = self._stop_locked(card)

        self._publish([(CARD_STOPPED, self._stopped_payload(result))])
        return result

    def _stop_locked(self, card: Card) -> StopResult:
        if not card.is_active:
            raise InvalidStateError(f"Card '{card.id}' is not being tracked", card_id=card.id)

        entry = self.ledger.active_entry_for(card.id)
        if entry is None:
            raise InvalidStateError(f"Card '{card.id}' is active but has no open time entry", card_id=card.id)

        now = self.clock.now()
        closed = self.ledger.close_entry(entry.id, now)
        minutes = closed.whole_minutes

        card.tracked_minutes += minutes
        card.is_active = False
        card.updated_at = now
        self.repository.save_card(card)

        logger.info(f"Stopped card {card.id}: +{minutes} min, {card.tracked_minutes} min total")
        return StopResult(card=copy.deepcopy(card), entry=closed, minutes_added=minutes, clock_skew=closed.invalid)

    @staticmethod
    def _stopped_payload(result: StopResult) -> Dict[str, Any]:
        return {
            "card_id": result.card.id,
            "project_id": result.card.project_id,
            "user_id": result.card.user_id,
            "minutes": result.minutes_added,
            "stopped_at": result.entry.end_time.isoformat(),
        }

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    @log_performance("complete_card")
    def complete(self, card_id: int) -> CompletionResult:
        events: List[Tuple[str, Dict[str, Any]]] = []
        with self._lock, self.repository.transaction():
            card = self.repository.get_card(card_id)
            if card.is_done:
                raise InvalidStateError(f"Card '{card_id}' is already done", card_id=card_id)

            stopped = None
            if card.is_active:
                stopped = self._stop_locked(card)
                events.append((CARD_STOPPED, self._stopped_payload(stopped)))

            now = self.clock.now()
            card.status = CardStatus.DONE
            card.completed_at = now
            card.updated_at = now
            self.repository.save_card(card)

            awards = self.progression.award_for_completion(card)
            events.append((CARD_COMPLETED, {
                "card_id": card.id,
                "project_id": card.project_id,
                "user_id": card.user_id,
                "tracked_minutes": card.tracked_minutes,
                "experience": sum(award.amount for award in awards),
                "completed_at": now.isoformat(),
            }))

        logger.info(f"Completed card {card_id} after {card.tracked_minutes} min")
        self._publish(events)
        return CompletionResult(card=card, stopped=stopped, awards=awards)

    def reopen(self, card_id: int) -> Card:
        """Move a done card back into the working set."""
        with self._lock, self.repository.transaction():
            card = self.repository.get_card(card_id)
            if not card.is_done:
                raise InvalidStateError(f"Card '{card_id}' is not done", card_id=card_id)
            card.status = CardStatus.IN_PROGRESS if card.tracked_minutes > 0 else CardStatus.OPEN
            card.completed_at = None
            card.updated_at = self.clock.now()
            self.repository.save_card(card)

        logger.info(f"Reopened card {card_id} as {card.status.value}")
        return card

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> Optional[StopResult]:
        """Stop the active card, if any. Meant for shutdown."""
        with self._lock:
            active = self.repository.get_active_card()
            if active is None:
                logger.info("No active card found during cleanup")
                return None
            result = self.stop(active.id)
        logger.info(f"Cleanup stopped active card {active.id}")
        return result

    def reconcile(self, card_id: int) -> Card:
        """Recompute ``tracked_minutes`` from the ledger."""
        with self._lock, self.repository.transaction():
            card = self.repository.get_card(card_id)
            expected = self.ledger.tracked_minutes_for(card_id)
            if card.tracked_minutes != expected:
                logger.warning(
                    f"Card {card_id} tracked minutes drifted: cached {card.tracked_minutes}, ledger {expected}"
                )
                card.tracked_minutes = expected
                card.updated_at = self.clock.now()
                self.repository.save_card(card)
        return card

    def _publish(self, events: List[Tuple[str, Dict[str, Any]]]) -> None:
        for event_type, payload in events:
            self.hooks.publish_event(event_type, **payload)

    def subscribe(self, event_type: str, callback: Callable[..., Any]) -> None:
        self.hooks.register_hook(event_type, callback)


def _check_estimate(value: Any) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"Estimated minutes must be an integer, got: {value!r}")
    if value < 0:
        raise ValidationError("Estimated minutes must not be negative")
