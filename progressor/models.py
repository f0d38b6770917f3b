"""Data models for Progressor time tracking.

This module contains the core data structures used throughout the tracker,
representing cards, time entries, skills, projects, and the derived
results handed back to callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .clock import format_timestamp, parse_timestamp


DEFAULT_USER_ID = 1


class CardStatus(str, Enum):
    """Lifecycle status of a card."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"


@dataclass(slots=True)
class Card:
    """A trackable unit of work."""

    title: str
    id: Optional[int] = None
    description: Optional[str] = None
    status: CardStatus = CardStatus.OPEN
    estimated_minutes: int = 0
    tracked_minutes: int = 0
    is_active: bool = False
    project_id: Optional[int] = None
    user_id: int = DEFAULT_USER_ID
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "estimated_minutes": self.estimated_minutes,
            "tracked_minutes": self.tracked_minutes,
            "is_active": self.is_active,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "completed_at": format_timestamp(self.completed_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Card":
        """Create from dictionary representation."""
        return cls(
            id=data.get("id"),
            title=data["title"],
            description=data.get("description"),
            status=CardStatus(data.get("status", CardStatus.OPEN.value)),
            estimated_minutes=data.get("estimated_minutes", 0),
            tracked_minutes=data.get("tracked_minutes", 0),
            is_active=data.get("is_active", False),
            project_id=data.get("project_id"),
            user_id=data.get("user_id", DEFAULT_USER_ID),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
            version=data.get("version", 0),
        )

    @property
    def is_done(self) -> bool:
        return self.status is CardStatus.DONE

    def is_on_time(self) -> bool:
        """Check if tracked time stayed within a non-zero estimate."""
        return self.estimated_minutes > 0 and self.tracked_minutes <= self.estimated_minutes

    def validate(self) -> List[str]:
        """Validate card data and return any issues."""
        issues = []

        if not self.title or not self.title.strip():
            issues.append("Card title is required")
        if not isinstance(self.estimated_minutes, int) or isinstance(self.estimated_minutes, bool):
            issues.append(f"Estimated minutes must be an integer, got: {self.estimated_minutes!r}")
        elif self.estimated_minutes < 0:
            issues.append("Estimated minutes must not be negative")
        if self.tracked_minutes < 0:
            issues.append("Tracked minutes must not be negative")
        if self.is_active and self.status is not CardStatus.IN_PROGRESS:
            issues.append("Only in-progress cards can be active")
        if self.completed_at is not None and self.status is not CardStatus.DONE:
            issues.append("Completed timestamp set on a card that is not done")

        return issues


@dataclass(slots=True)
class TimeEntry:
    """One contiguous work session against a card."""

    card_id: int
    start_time: datetime
    id: Optional[int] = None
    end_time: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    invalid: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "card_id": self.card_id,
            "start_time": format_timestamp(self.start_time),
            "end_time": format_timestamp(self.end_time),
            "duration_seconds": self.duration_seconds,
            "invalid": self.invalid,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeEntry":
        """Create from dictionary representation."""
        return cls(
            id=data.get("id"),
            card_id=data["card_id"],
            start_time=parse_timestamp(data["start_time"]),
            end_time=parse_timestamp(data.get("end_time")),
            duration_seconds=data.get("duration_seconds"),
            invalid=data.get("invalid", False),
        )

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def whole_minutes(self) -> int:
        """Closed duration floored to whole minutes (0 while open or invalid)."""
        if self.duration_seconds is None:
            return 0
        return max(0, int(self.duration_seconds // 60))


@dataclass(slots=True)
class Skill:
    """A named progression track accruing experience."""

    owner_id: int
    name: str
    id: Optional[int] = None
    description: Optional[str] = None
    level: int = 1
    experience: int = 0
    minutes_tracked: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "level": self.level,
            "experience": self.experience,
            "minutes_tracked": self.minutes_tracked,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Skill":
        """Create from dictionary representation."""
        return cls(
            id=data.get("id"),
            owner_id=data["owner_id"],
            name=data["name"],
            description=data.get("description"),
            level=data.get("level", 1),
            experience=data.get("experience", 0),
            minutes_tracked=data.get("minutes_tracked", 0),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )

    def validate(self) -> List[str]:
        """Validate skill data and return any issues."""
        issues = []

        if not self.name or not self.name.strip():
            issues.append("Skill name is required")
        if self.level < 1:
            issues.append(f"Level must be at least 1, got: {self.level}")
        if self.experience < 0:
            issues.append("Experience must not be negative")
        if self.minutes_tracked < 0:
            issues.append("Tracked minutes must not be negative")

        return issues


@dataclass(slots=True)
class Project:
    """A grouping of cards that decides which skills earn experience."""

    name: str
    id: Optional[int] = None
    owner_id: int = DEFAULT_USER_ID

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"id": self.id, "name": self.name, "owner_id": self.owner_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        """Create from dictionary representation."""
        return cls(
            id=data.get("id"),
            name=data["name"],
            owner_id=data.get("owner_id", DEFAULT_USER_ID),
        )


@dataclass(slots=True)
class TaskCompletion:
    """Experience granted for completing a card; one per card."""

    card_id: int
    user_id: int
    base_experience: int
    bonus_experience: int
    completed_at: datetime

    @property
    def total_experience(self) -> int:
        return self.base_experience + self.bonus_experience

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "card_id": self.card_id,
            "user_id": self.user_id,
            "base_experience": self.base_experience,
            "bonus_experience": self.bonus_experience,
            "total_experience": self.total_experience,
            "completed_at": format_timestamp(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskCompletion":
        """Create from dictionary representation."""
        return cls(
            card_id=data["card_id"],
            user_id=data["user_id"],
            base_experience=data["base_experience"],
            bonus_experience=data.get("bonus_experience", 0),
            completed_at=parse_timestamp(data["completed_at"]),
        )


@dataclass(slots=True)
class UserSkillProgress:
    """Read-only view of a skill against the level thresholds."""

    skill_id: int
    name: str
    level: int
    experience: int
    experience_to_next_level: int
    minutes_tracked: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "skill_id": self.skill_id,
            "name": self.name,
            "level": self.level,
            "experience": self.experience,
            "experience_to_next_level": self.experience_to_next_level,
            "minutes_tracked": self.minutes_tracked,
        }


@dataclass(slots=True)
class ExperienceAward:
    """Experience granted to one skill by one completion."""

    skill_id: int
    amount: int
    level_before: int
    level_after: int

    @property
    def leveled_up(self) -> bool:
        return self.level_after > self.level_before

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "skill_id": self.skill_id,
            "amount": self.amount,
            "level_before": self.level_before,
            "level_after": self.level_after,
            "leveled_up": self.leveled_up,
        }


@dataclass(slots=True)
class StopResult:
    """Outcome of stopping a card."""

    card: Card
    entry: TimeEntry
    minutes_added: int
    clock_skew: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "card": self.card.to_dict(),
            "entry": self.entry.to_dict(),
            "minutes_added": self.minutes_added,
            "clock_skew": self.clock_skew,
        }


@dataclass(slots=True)
class StartResult:
    """Outcome of starting a card."""

    card: Card
    entry: Optional[TimeEntry]
    auto_stopped: Optional[StopResult] = None
    noop: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "card": self.card.to_dict(),
            "entry": self.entry.to_dict() if self.entry else None,
            "auto_stopped": self.auto_stopped.to_dict() if self.auto_stopped else None,
            "noop": self.noop,
        }


@dataclass(slots=True)
class CompletionResult:
    """Outcome of completing a card."""

    card: Card
    stopped: Optional[StopResult] = None
    awards: List[ExperienceAward] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "card": self.card.to_dict(),
            "stopped": self.stopped.to_dict() if self.stopped else None,
            "awards": [award.to_dict() for award in self.awards],
            "experience_awarded": sum(award.amount for award in self.awards),
        }


@dataclass(slots=True)
class StatsResult:
    """Tracked-hour rollups over trailing windows."""

    week_hours: float = 0.0
    month_hours: float = 0.0
    year_hours: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "week_hours": self.week_hours,
            "month_hours": self.month_hours,
            "year_hours": self.year_hours,
        }


@dataclass(slots=True)
class DailyTotal:
    """Total tracked minutes for one calendar day."""

    date: date
    total_minutes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"date": self.date.isoformat(), "total_minutes": self.total_minutes}
