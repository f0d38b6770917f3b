"""Service facade for Progressor.

This module wires the lifecycle, ledger, aggregator and skill progression
together and exposes them to the presentation layer. Every method returns a
plain dictionary: either the result, or an error record with an
``error_type`` drawn from the tracker error taxonomy. Nothing raises across
this boundary.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .clock import Clock, SystemClock
from .config import TrackerConfig
from .errors import TrackerError, ValidationError
from .ledger import TimeEntryLedger
from .lifecycle import CardLifecycle
from .models import DEFAULT_USER_ID, CardStatus
from .repository import InMemoryRepository, JsonFileRepository, Repository
from .skills import ExperiencePolicy, LevelPolicy, SkillProgression
from .stats import StatsAggregator
from .tracker_logging import (
    CARD_STOPPED,
    ObservabilityHooks,
    log_error_with_context,
    log_operation,
)


logger = logging.getLogger("progressor.service")


class TrackerService:
    """Facade over the tracking engine."""

    def __init__(
        self,
        repository: Optional[Repository] = None,
        config: Optional[TrackerConfig] = None,
        clock: Optional[Clock] = None,
        hooks: Optional[ObservabilityHooks] = None,
    ):
        """Initialize the engine around a repository."""
        self.config = config or TrackerConfig()
        self.repository = repository or InMemoryRepository()
        self.clock = clock or SystemClock()
        self.hooks = hooks or ObservabilityHooks()

        self.ledger = TimeEntryLedger(self.repository)
        self.progression = SkillProgression(
            self.repository,
            level_policy=LevelPolicy(self.config.level_constant),
            experience_policy=ExperiencePolicy(self.config.on_time_multiplier),
            clock=self.clock,
        )
        self.lifecycle = CardLifecycle(
            self.repository,
            ledger=self.ledger,
            progression=self.progression,
            clock=self.clock,
            delete_policy=self.config.delete_policy,
            hooks=self.hooks,
        )
        self.stats = StatsAggregator(self.repository, clock=self.clock, tz=self.config.tzinfo, ledger=self.ledger)

        self.hooks.register_hook(CARD_STOPPED, self.progression.handle_card_stopped)

    @classmethod
    def from_root(
        cls,
        root: Path | str,
        config: Optional[TrackerConfig] = None,
        clock: Optional[Clock] = None,
    ) -> "TrackerService":
        """Open a service backed by JSON files under ``root``."""
        config = config or TrackerConfig()
        repository = JsonFileRepository(root, storage_dir=config.storage_dir)
        return cls(repository=repository, config=config, clock=clock)

    # ------------------------------------------------------------------
    # Card tracking
    # ------------------------------------------------------------------

    def start_card(self, card_id: int) -> Dict[str, Any]:
        """Start tracking a card, pausing whichever card was running."""
        try:
            with log_operation("start_card", card_id=card_id):
                result = self.lifecycle.start(card_id)

            if result.noop:
                message = f"Card {card_id} is already being tracked"
            elif result.auto_stopped:
                message = (
                    f"Started card {card_id}; paused card {result.auto_stopped.card.id} "
                    f"after {result.auto_stopped.minutes_added} min"
                )
            else:
                message = f"Started card {card_id}"
            return {"success": True, **result.to_dict(), "message": message}
        except Exception as e:
            return self._failure("start_card", e, {"card_id": card_id},
                                 suggestion="Check that the card exists and is not done")

    def stop_card(self, card_id: int) -> Dict[str, Any]:
        """Stop tracking a card."""
        try:
            with log_operation("stop_card", card_id=card_id):
                result = self.lifecycle.stop(card_id)
            return {
                "success": True,
                **result.to_dict(),
                "message": f"Stopped card {card_id}: +{result.minutes_added} min",
            }
        except Exception as e:
            return self._failure("stop_card", e, {"card_id": card_id},
                                 suggestion="Only the active card can be stopped; use get_active_card")

    def complete_card(self, card_id: int) -> Dict[str, Any]:
        """Mark a card done and award skill experience."""
        try:
            with log_operation("complete_card", card_id=card_id):
                result = self.lifecycle.complete(card_id)
            payload = result.to_dict()
            return {
                "success": True,
                **payload,
                "message": f"Completed card {card_id}; awarded {payload['experience_awarded']} XP",
            }
        except Exception as e:
            return self._failure("complete_card", e, {"card_id": card_id},
                                 suggestion="Check that the card exists and is not already done")

    def reopen_card(self, card_id: int) -> Dict[str, Any]:
        try:
            card = self.lifecycle.reopen(card_id)
            return {"success": True, "card": card.to_dict(), "message": f"Reopened card {card_id}"}
        except Exception as e:
            return self._failure("reopen_card", e, {"card_id": card_id})

    # ------------------------------------------------------------------
    # Card management
    # ------------------------------------------------------------------

    def create_card(
        self,
        title: str,
        estimated_minutes: int = 0,
        description: Optional[str] = None,
        project_id: Optional[int] = None,
        user_id: int = DEFAULT_USER_ID,
    ) -> Dict[str, Any]:
        try:
            card = self.lifecycle.create_card(
                title,
                estimated_minutes=estimated_minutes,
                description=description,
                project_id=project_id,
                user_id=user_id,
            )
            return {"success": True, "card": card.to_dict(), "message": f"Created card {card.id}"}
        except Exception as e:
            return self._failure("create_card", e, {"title": title, "project_id": project_id},
                                 suggestion="Provide a title and a non-negative estimate")

    def update_card(self, card_id: int, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """Edit title, description or estimate of a card."""
        try:
            card = self.lifecycle.update(card_id, dict(fields))
            return {"success": True, "card": card.to_dict(), "message": f"Updated card {card_id}"}
        except Exception as e:
            return self._failure("update_card", e, {"card_id": card_id, "fields": sorted(fields)},
                                 suggestion="Only title, description and estimated_minutes can change before completion")

    def delete_card(self, card_id: int) -> Dict[str, Any]:
        try:
            removed = self.lifecycle.delete(card_id)
            return {
                "success": True,
                "card_id": card_id,
                "removed_time_entries": removed,
                "message": f"Deleted card {card_id}",
            }
        except Exception as e:
            return self._failure("delete_card", e, {"card_id": card_id},
                                 suggestion="Stop the card before deleting it")

    def get_card(self, card_id: int) -> Dict[str, Any]:
        try:
            card = self.lifecycle.get_card(card_id)
            active_entry = self.ledger.active_entry_for(card_id)
            return {
                "success": True,
                "card": card.to_dict(),
                "active_entry": active_entry.to_dict() if active_entry else None,
            }
        except Exception as e:
            return self._failure("get_card", e, {"card_id": card_id})

    def list_cards(
        self,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
        project_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        try:
            try:
                status_filter = CardStatus(status) if status else None
            except ValueError:
                raise ValidationError(
                    f"Unknown status '{status}'; expected one of {[s.value for s in CardStatus]}"
                )
            cards = self.lifecycle.list_cards(user_id=user_id, status=status_filter, project_id=project_id)
            return {
                "success": True,
                "cards": [card.to_dict() for card in cards],
                "count": len(cards),
                "filters_applied": {"user_id": user_id, "status": status, "project_id": project_id},
            }
        except Exception as e:
            return self._failure("list_cards", e, {"status": status})

    def get_active_card(self) -> Dict[str, Any]:
        try:
            card = self.lifecycle.get_active_card()
            if card is None:
                return {"success": True, "card": None, "active_entry": None, "message": "No card is being tracked"}
            entry = self.ledger.active_entry_for(card.id)
            return {
                "success": True,
                "card": card.to_dict(),
                "active_entry": entry.to_dict() if entry else None,
                "message": f"Card {card.id} is being tracked",
            }
        except Exception as e:
            return self._failure("get_active_card", e, {})

    def reconcile_card(self, card_id: int) -> Dict[str, Any]:
        """Recompute a card's tracked minutes from its time entries."""
        try:
            card = self.lifecycle.reconcile(card_id)
            return {"success": True, "card": card.to_dict(), "tracked_minutes": card.tracked_minutes}
        except Exception as e:
            return self._failure("reconcile_card", e, {"card_id": card_id})

    def cleanup(self) -> Dict[str, Any]:
        """Stop the active card before shutdown."""
        try:
            result = self.lifecycle.cleanup()
            return {
                "success": True,
                "stopped": result.to_dict() if result else None,
                "message": "Stopped active card" if result else "No active card to stop",
            }
        except Exception as e:
            return self._failure("cleanup", e, {})

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_stats(self, user_id: int = DEFAULT_USER_ID, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """Tracked hours over the trailing week, month and year."""
        try:
            stats = self.stats.get_stats(user_id, as_of=as_of)
            return {"success": True, "user_id": user_id, **stats.to_dict()}
        except Exception as e:
            return self._failure("get_stats", e, {"user_id": user_id})

    def get_daily_totals(self, user_id: int = DEFAULT_USER_ID, month: Optional[str] = None) -> Dict[str, Any]:
        """Minutes per calendar day of ``month`` (defaults to the current month)."""
        try:
            if month is None:
                now = self.clock.now().astimezone(self.config.tzinfo)
                month = f"{now.year:04d}-{now.month:02d}"
            totals = self.stats.daily_totals(user_id, month)
            return {
                "success": True,
                "user_id": user_id,
                "month": month,
                "days": [total.to_dict() for total in totals],
                "total_minutes": sum(total.total_minutes for total in totals),
            }
        except Exception as e:
            return self._failure("get_daily_totals", e, {"user_id": user_id, "month": month},
                                 suggestion="Pass the month as 'YYYY-MM'")

    def get_project_totals(self, user_id: int = DEFAULT_USER_ID) -> Dict[str, Any]:
        try:
            totals = self.stats.project_totals(user_id)
            return {
                "success": True,
                "user_id": user_id,
                "projects": [
                    {"project_id": project_id, "total_minutes": minutes}
                    for project_id, minutes in sorted(totals.items(), key=lambda item: (item[0] is None, item[0] or 0))
                ],
                "total_minutes": self.stats.user_total_minutes(user_id),
            }
        except Exception as e:
            return self._failure("get_project_totals", e, {"user_id": user_id})

    # ------------------------------------------------------------------
    # Skills and projects
    # ------------------------------------------------------------------

    def get_user_skill_progress(self, user_id: int = DEFAULT_USER_ID) -> Dict[str, Any]:
        """Level, experience and experience-to-next-level per skill."""
        try:
            progress = self.progression.get_user_skill_progress(user_id)
            return {
                "success": True,
                "user_id": user_id,
                "skills": [item.to_dict() for item in progress],
                "total_experience": self.progression.total_user_experience(user_id),
            }
        except Exception as e:
            return self._failure("get_user_skill_progress", e, {"user_id": user_id})

    def create_skill(self, name: str, owner_id: int = DEFAULT_USER_ID, description: Optional[str] = None) -> Dict[str, Any]:
        try:
            skill = self.progression.create_skill(name, owner_id=owner_id, description=description)
            return {"success": True, "skill": skill.to_dict(), "message": f"Created skill {skill.id}"}
        except Exception as e:
            return self._failure("create_skill", e, {"name": name})

    def update_skill(self, skill_id: int, name: Optional[str] = None, description: Optional[str] = None) -> Dict[str, Any]:
        try:
            skill = self.progression.update_skill(skill_id, name=name, description=description)
            return {"success": True, "skill": skill.to_dict(), "message": f"Updated skill {skill_id}"}
        except Exception as e:
            return self._failure("update_skill", e, {"skill_id": skill_id})

    def delete_skill(self, skill_id: int) -> Dict[str, Any]:
        try:
            self.progression.delete_skill(skill_id)
            return {"success": True, "skill_id": skill_id, "message": f"Deleted skill {skill_id}"}
        except Exception as e:
            return self._failure("delete_skill", e, {"skill_id": skill_id})

    def list_skills(self, owner_id: Optional[int] = None) -> Dict[str, Any]:
        try:
            skills = self.progression.list_skills(owner_id=owner_id)
            return {"success": True, "skills": [skill.to_dict() for skill in skills], "count": len(skills)}
        except Exception as e:
            return self._failure("list_skills", e, {"owner_id": owner_id})

    def create_project(self, name: str, owner_id: int = DEFAULT_USER_ID) -> Dict[str, Any]:
        try:
            project = self.progression.create_project(name, owner_id=owner_id)
            return {"success": True, "project": project.to_dict(), "message": f"Created project {project.id}"}
        except Exception as e:
            return self._failure("create_project", e, {"name": name})

    def list_projects(self, owner_id: Optional[int] = None) -> Dict[str, Any]:
        try:
            projects = self.progression.list_projects(owner_id=owner_id)
            return {
                "success": True,
                "projects": [
                    {
                        **project.to_dict(),
                        "skill_ids": [skill.id for skill in self.progression.skills_for_project(project.id)],
                    }
                    for project in projects
                ],
                "count": len(projects),
            }
        except Exception as e:
            return self._failure("list_projects", e, {"owner_id": owner_id})

    def link_project_skill(self, project_id: int, skill_id: int) -> Dict[str, Any]:
        try:
            self.progression.link_skill(project_id, skill_id)
            return {
                "success": True,
                "project_id": project_id,
                "skill_id": skill_id,
                "message": f"Skill {skill_id} now earns experience from project {project_id}",
            }
        except Exception as e:
            return self._failure("link_project_skill", e, {"project_id": project_id, "skill_id": skill_id})

    def unlink_project_skill(self, project_id: int, skill_id: int) -> Dict[str, Any]:
        try:
            self.progression.unlink_skill(project_id, skill_id)
            return {"success": True, "project_id": project_id, "skill_id": skill_id}
        except Exception as e:
            return self._failure("unlink_project_skill", e, {"project_id": project_id, "skill_id": skill_id})

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _failure(
        self,
        operation: str,
        error: Exception,
        context: Dict[str, Any],
        suggestion: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Turn an exception into an error result."""
        if isinstance(error, TrackerError):
            logger.warning(f"{operation} rejected: {error.message}")
            result = {
                "success": False,
                "error": f"Failed to {operation.replace('_', ' ')}: {error.message}",
                "error_type": error.error_type,
                "message": f"Error: {error.message}",
            }
        else:
            log_error_with_context(error, {"operation": operation, **context})
            result = {
                "success": False,
                "error": f"Failed to {operation.replace('_', ' ')}: {error}",
                "error_type": "Internal",
                "message": f"Error: {error}",
            }
        if suggestion:
            result["suggestion"] = suggestion
        return result
