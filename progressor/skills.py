"""Skill progression.

Completed cards convert tracked minutes into experience for every skill
linked to the card's project. Levels follow a square-root curve:
``level = floor(sqrt(xp / k)) + 1``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import List, Optional

from .clock import Clock, SystemClock
from .errors import ValidationError
from .models import (
    DEFAULT_USER_ID,
    Card,
    ExperienceAward,
    Project,
    Skill,
    TaskCompletion,
    UserSkillProgress,
)
from .repository import Repository


logger = logging.getLogger("progressor.skills")


@dataclass(frozen=True)
class LevelPolicy:
    """Maps cumulative experience to levels."""

    k: int = 100

    def __post_init__(self):
        if self.k < 1:
            raise ValidationError(f"Level constant must be positive, got: {self.k}")

    def level_for_xp(self, xp: int) -> int:
        if xp < 0:
            raise ValidationError(f"Experience must not be negative, got: {xp}")
        # isqrt(xp // k) == floor(sqrt(xp / k)) for non-negative integers
        return math.isqrt(xp // self.k) + 1

    def xp_for_level(self, level: int) -> int:
        """Minimum experience needed to reach ``level``."""
        if level < 1:
            raise ValidationError(f"Level must be at least 1, got: {level}")
        return self.k * (level - 1) ** 2

    def xp_to_next_level(self, xp: int) -> int:
        return self.xp_for_level(self.level_for_xp(xp) + 1) - xp


@dataclass(frozen=True)
class ExperiencePolicy:
    """Turns a completed card's minutes into experience points."""

    on_time_multiplier: float = 1.2

    def __post_init__(self):
        if self.on_time_multiplier < 1:
            raise ValidationError(f"On-time multiplier must be at least 1, got: {self.on_time_multiplier}")

    def base_experience(self, tracked_minutes: int) -> int:
        return max(0, tracked_minutes)

    def experience_for(self, tracked_minutes: int, estimated_minutes: int) -> int:
        """1 XP per tracked minute, scaled by the bonus when within estimate."""
        base = self.base_experience(tracked_minutes)
        if estimated_minutes > 0 and tracked_minutes <= estimated_minutes:
            scaled = Decimal(base) * Decimal(str(self.on_time_multiplier))
            return int(scaled.to_integral_value(rounding=ROUND_FLOOR))
        return base


class SkillProgression:
    """Awards experience and reports progress per skill."""

    def __init__(
        self,
        repository: Repository,
        level_policy: Optional[LevelPolicy] = None,
        experience_policy: Optional[ExperiencePolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self.repository = repository
        self.level_policy = level_policy or LevelPolicy()
        self.experience_policy = experience_policy or ExperiencePolicy()
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Awards
    # ------------------------------------------------------------------

    def award_for_completion(self, card: Card) -> List[ExperienceAward]:
        """Grant completion experience for ``card`` once.

        Returns an empty list when the card has no project, the project has
        no skills, or the card was already rewarded.
        """
        with self.repository.transaction():
            if self.repository.get_task_completion(card.id) is not None:
                logger.info(f"Card {card.id} was already rewarded; skipping award")
                return []

            amount = self.experience_policy.experience_for(card.tracked_minutes, card.estimated_minutes)
            base = self.experience_policy.base_experience(card.tracked_minutes)
            now = self.clock.now()
            self.repository.save_task_completion(TaskCompletion(
                card_id=card.id,
                user_id=card.user_id,
                base_experience=base,
                bonus_experience=amount - base,
                completed_at=now,
            ))

            if card.project_id is None:
                return []

            awards = []
            for skill in self.repository.list_project_skills(card.project_id):
                awards.append(self._grant(skill, amount))

        for award in awards:
            logger.info(
                f"Skill {award.skill_id} gained {award.amount} XP "
                f"(level {award.level_before} -> {award.level_after})"
            )
        return awards

    def _grant(self, skill: Skill, amount: int) -> ExperienceAward:
        if amount < 0:
            raise ValidationError(f"Experience award must not be negative, got: {amount}")
        level_before = skill.level
        skill.experience += amount
        skill.level = self.level_policy.level_for_xp(skill.experience)
        skill.updated_at = self.clock.now()
        self.repository.save_skill(skill)
        return ExperienceAward(
            skill_id=skill.id,
            amount=amount,
            level_before=level_before,
            level_after=skill.level,
        )

    def record_session(self, card_id: int, minutes: int) -> None:
        """Add a finished session's minutes to the skills of the card's project."""
        if minutes <= 0:
            return
        with self.repository.transaction():
            card = self.repository.get_card(card_id)
            if card.project_id is None:
                return
            now = self.clock.now()
            for skill in self.repository.list_project_skills(card.project_id):
                skill.minutes_tracked += minutes
                skill.updated_at = now
                self.repository.save_skill(skill)
        logger.debug(f"Recorded {minutes} minutes against skills of card {card_id}")

    def handle_card_stopped(self, card_id: int, minutes: int, **_event) -> None:
        """Hook for ``card_stopped`` events."""
        self.record_session(card_id, minutes)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_user_skill_progress(self, user_id: int = DEFAULT_USER_ID) -> List[UserSkillProgress]:
        return [
            UserSkillProgress(
                skill_id=skill.id,
                name=skill.name,
                level=self.level_policy.level_for_xp(skill.experience),
                experience=skill.experience,
                experience_to_next_level=self.level_policy.xp_to_next_level(skill.experience),
                minutes_tracked=skill.minutes_tracked,
            )
            for skill in self.repository.list_skills(owner_id=user_id)
        ]

    def total_user_experience(self, user_id: int = DEFAULT_USER_ID) -> int:
        return sum(c.total_experience for c in self.repository.list_task_completions(user_id=user_id))

    # ------------------------------------------------------------------
    # Skill and project management
    # ------------------------------------------------------------------

    def create_skill(self, name: str, owner_id: int = DEFAULT_USER_ID, description: Optional[str] = None) -> Skill:
        if not name or not name.strip():
            raise ValidationError("Skill name is required")
        now = self.clock.now()
        skill = Skill(
            owner_id=owner_id,
            name=name.strip(),
            description=description or None,
            created_at=now,
            updated_at=now,
        )
        self.repository.save_skill(skill)
        logger.info(f"Created skill {skill.id} '{skill.name}' for user {owner_id}")
        return skill

    def get_skill(self, skill_id: int) -> Skill:
        return self.repository.get_skill(skill_id)

    def list_skills(self, owner_id: Optional[int] = None) -> List[Skill]:
        return self.repository.list_skills(owner_id=owner_id)

    def update_skill(self, skill_id: int, name: Optional[str] = None, description: Optional[str] = None) -> Skill:
        with self.repository.transaction():
            skill = self.repository.get_skill(skill_id)
            if name is not None:
                if not name.strip():
                    raise ValidationError("Skill name is required")
                skill.name = name.strip()
            if description is not None:
                skill.description = description or None
            skill.updated_at = self.clock.now()
            self.repository.save_skill(skill)
        return skill

    def delete_skill(self, skill_id: int) -> None:
        self.repository.delete_skill(skill_id)
        logger.info(f"Deleted skill {skill_id}")

    def create_project(self, name: str, owner_id: int = DEFAULT_USER_ID) -> Project:
        project = Project(name=(name or "").strip(), owner_id=owner_id)
        self.repository.save_project(project)
        logger.info(f"Created project {project.id} '{project.name}'")
        return project

    def list_projects(self, owner_id: Optional[int] = None) -> List[Project]:
        return self.repository.list_projects(owner_id=owner_id)

    def link_skill(self, project_id: int, skill_id: int) -> None:
        self.repository.add_project_skill(project_id, skill_id)
        logger.info(f"Linked skill {skill_id} to project {project_id}")

    def unlink_skill(self, project_id: int, skill_id: int) -> None:
        self.repository.remove_project_skill(project_id, skill_id)
        logger.info(f"Unlinked skill {skill_id} from project {project_id}")

    def skills_for_project(self, project_id: int) -> List[Skill]:
        return self.repository.list_project_skills(project_id)
