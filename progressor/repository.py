"""Storage boundary for the tracker.

The engine talks to storage only through :class:`Repository`. Two
implementations ship with the package: an in-memory store used by tests and
embedders, and a JSON-file store that keeps one file per table under the
project root.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .models import Card, CardStatus, Project, Skill, TaskCompletion, TimeEntry
from .tracker_logging import log_error_with_context


logger = logging.getLogger("progressor.repository")


class Repository(ABC):
    """Durable storage for cards, time entries, skills and projects."""

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @abstractmethod
    def transaction(self) -> Iterator["Repository"]:
        """Context manager: all writes inside commit together or not at all."""

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    @abstractmethod
    def get_card(self, card_id: int) -> Card:
        ...

    @abstractmethod
    def list_cards(
        self,
        user_id: Optional[int] = None,
        status: Optional[CardStatus] = None,
        project_id: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> List[Card]:
        ...

    @abstractmethod
    def save_card(self, card: Card) -> Card:
        ...

    @abstractmethod
    def delete_card(self, card_id: int) -> None:
        ...

    @abstractmethod
    def get_active_card(self) -> Optional[Card]:
        ...

    # ------------------------------------------------------------------
    # Time entries
    # ------------------------------------------------------------------

    @abstractmethod
    def insert_time_entry(self, entry: TimeEntry) -> int:
        ...

    @abstractmethod
    def close_time_entry(
        self,
        entry_id: int,
        end_time: datetime,
        duration_seconds: Optional[float],
        invalid: bool = False,
    ) -> TimeEntry:
        ...

    @abstractmethod
    def get_time_entry(self, entry_id: int) -> TimeEntry:
        ...

    @abstractmethod
    def query_time_entries(
        self,
        card_id: Optional[int] = None,
        user_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[TimeEntry]:
        ...

    @abstractmethod
    def delete_time_entries(self, card_id: int) -> int:
        ...

    # ------------------------------------------------------------------
    # Skills and projects
    # ------------------------------------------------------------------

    @abstractmethod
    def get_skill(self, skill_id: int) -> Skill:
        ...

    @abstractmethod
    def save_skill(self, skill: Skill) -> Skill:
        ...

    @abstractmethod
    def list_skills(self, owner_id: Optional[int] = None) -> List[Skill]:
        ...

    @abstractmethod
    def delete_skill(self, skill_id: int) -> None:
        ...

    @abstractmethod
    def get_project(self, project_id: int) -> Project:
        ...

    @abstractmethod
    def save_project(self, project: Project) -> Project:
        ...

    @abstractmethod
    def list_projects(self, owner_id: Optional[int] = None) -> List[Project]:
        ...

    @abstractmethod
    def list_project_skills(self, project_id: int) -> List[Skill]:
        ...

    @abstractmethod
    def add_project_skill(self, project_id: int, skill_id: int) -> None:
        ...

    @abstractmethod
    def remove_project_skill(self, project_id: int, skill_id: int) -> None:
        ...

    # ------------------------------------------------------------------
    # Task completions
    # ------------------------------------------------------------------

    @abstractmethod
    def get_task_completion(self, card_id: int) -> Optional[TaskCompletion]:
        ...

    @abstractmethod
    def save_task_completion(self, completion: TaskCompletion) -> None:
        ...

    @abstractmethod
    def list_task_completions(self, user_id: Optional[int] = None) -> List[TaskCompletion]:
        ...


class InMemoryRepository(Repository):
    """Thread-safe in-process store.

    Every read returns a copy and every write stores a copy, so callers
    never share mutable state with the store. ``transaction()`` holds the
    store lock for its whole body and rolls all tables back if the body
    raises.
    """

    TABLES = ("cards", "time_entries", "skills", "projects", "project_skills", "task_completions", "sequences")

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._cards: Dict[int, Card] = {}
        self._entries: Dict[int, TimeEntry] = {}
        self._skills: Dict[int, Skill] = {}
        self._projects: Dict[int, Project] = {}
        self._project_skills: Set[Tuple[int, int]] = set()
        self._completions: Dict[int, TaskCompletion] = {}
        self._sequences: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["InMemoryRepository"]:
        with self._lock:
            if self._depth:
                # Nested transactions join the outer one
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            snapshot = self._snapshot()
            self._depth = 1
            try:
                yield self
                self._commit()
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._depth = 0

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy({
            "cards": self._cards,
            "time_entries": self._entries,
            "skills": self._skills,
            "projects": self._projects,
            "project_skills": self._project_skills,
            "task_completions": self._completions,
            "sequences": self._sequences,
        })

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self._cards = snapshot["cards"]
        self._entries = snapshot["time_entries"]
        self._skills = snapshot["skills"]
        self._projects = snapshot["projects"]
        self._project_skills = snapshot["project_skills"]
        self._completions = snapshot["task_completions"]
        self._sequences = snapshot["sequences"]
        logger.debug("Transaction rolled back")

    def _commit(self) -> None:
        """Hook for persistent subclasses."""

    def _next_id(self, table: str) -> int:
        value = self._sequences.get(table, 0) + 1
        self._sequences[table] = value
        return value

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    def get_card(self, card_id: int) -> Card:
        with self._lock:
            card = self._cards.get(card_id)
            if card is None:
                raise NotFoundError(f"Card '{card_id}' not found", card_id=card_id)
            return copy.deepcopy(card)

    def list_cards(
        self,
        user_id: Optional[int] = None,
        status: Optional[CardStatus] = None,
        project_id: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> List[Card]:
        with self._lock:
            cards = []
            for card_id in sorted(self._cards):
                card = self._cards[card_id]
                if user_id is not None and card.user_id != user_id:
                    continue
                if status is not None and card.status is not CardStatus(status):
                    continue
                if project_id is not None and card.project_id != project_id:
                    continue
                if is_active is not None and card.is_active != is_active:
                    continue
                cards.append(copy.deepcopy(card))
            return cards

    def save_card(self, card: Card) -> Card:
        issues = card.validate()
        if issues:
            raise ValidationError("Invalid card: " + "; ".join(issues), issues=issues)

        with self.transaction():
            if card.project_id is not None and card.project_id not in self._projects:
                raise NotFoundError(f"Project '{card.project_id}' not found", project_id=card.project_id)

            if card.id is not None:
                stored = self._cards.get(card.id)
                if stored is None:
                    raise NotFoundError(f"Card '{card.id}' not found", card_id=card.id)
                if stored.version != card.version:
                    raise ConflictError(
                        f"Card '{card.id}' was modified concurrently "
                        f"(expected version {card.version}, found {stored.version})",
                        card_id=card.id,
                    )

            if card.is_active:
                for other in self._cards.values():
                    if other.is_active and other.id != card.id:
                        raise ConflictError(
                            f"Card '{other.id}' is already active",
                            card_id=card.id,
                            active_card_id=other.id,
                        )

            if card.id is None:
                card.id = self._next_id("cards")
            card.version += 1
            self._cards[card.id] = copy.deepcopy(card)
            return card

    def delete_card(self, card_id: int) -> None:
        with self.transaction():
            if card_id not in self._cards:
                raise NotFoundError(f"Card '{card_id}' not found", card_id=card_id)
            del self._cards[card_id]

    def get_active_card(self) -> Optional[Card]:
        with self._lock:
            for card_id in sorted(self._cards):
                if self._cards[card_id].is_active:
                    return copy.deepcopy(self._cards[card_id])
            return None

    # ------------------------------------------------------------------
    # Time entries
    # ------------------------------------------------------------------

    def insert_time_entry(self, entry: TimeEntry) -> int:
        with self.transaction():
            if entry.card_id not in self._cards:
                raise NotFoundError(f"Card '{entry.card_id}' not found", card_id=entry.card_id)
            if entry.is_open:
                for other in self._entries.values():
                    if other.card_id == entry.card_id and other.is_open:
                        raise ConflictError(
                            f"Card '{entry.card_id}' already has an open time entry",
                            card_id=entry.card_id,
                            entry_id=other.id,
                        )
            entry.id = self._next_id("time_entries")
            self._entries[entry.id] = copy.deepcopy(entry)
            return entry.id

    def close_time_entry(
        self,
        entry_id: int,
        end_time: datetime,
        duration_seconds: Optional[float],
        invalid: bool = False,
    ) -> TimeEntry:
        with self.transaction():
            entry = self._entries.get(entry_id)
            if entry is None:
                raise NotFoundError(f"Time entry '{entry_id}' not found", entry_id=entry_id)
            if not entry.is_open:
                raise InvalidStateError(f"Time entry '{entry_id}' is already closed", entry_id=entry_id)
            entry.end_time = end_time
            entry.duration_seconds = duration_seconds
            entry.invalid = invalid
            return copy.deepcopy(entry)

    def get_time_entry(self, entry_id: int) -> TimeEntry:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise NotFoundError(f"Time entry '{entry_id}' not found", entry_id=entry_id)
            return copy.deepcopy(entry)

    def query_time_entries(
        self,
        card_id: Optional[int] = None,
        user_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[TimeEntry]:
        with self._lock:
            matches = []
            for entry in self._entries.values():
                if card_id is not None and entry.card_id != card_id:
                    continue
                if user_id is not None:
                    card = self._cards.get(entry.card_id)
                    if card is None or card.user_id != user_id:
                        continue
                if end is not None and entry.start_time >= end:
                    continue
                if start is not None and entry.end_time is not None:
                    if max(entry.end_time, entry.start_time) <= start:
                        continue
                matches.append(copy.deepcopy(entry))
            matches.sort(key=lambda e: (e.start_time, e.id))
            return matches

    def delete_time_entries(self, card_id: int) -> int:
        with self.transaction():
            doomed = [entry_id for entry_id, entry in self._entries.items() if entry.card_id == card_id]
            for entry_id in doomed:
                del self._entries[entry_id]
            return len(doomed)

    # ------------------------------------------------------------------
    # Skills
    # ------------------------------------------------------------------

    def get_skill(self, skill_id: int) -> Skill:
        with self._lock:
            skill = self._skills.get(skill_id)
            if skill is None:
                raise NotFoundError(f"Skill '{skill_id}' not found", skill_id=skill_id)
            return copy.deepcopy(skill)

    def save_skill(self, skill: Skill) -> Skill:
        issues = skill.validate()
        if issues:
            raise ValidationError("Invalid skill: " + "; ".join(issues), issues=issues)

        with self.transaction():
            if skill.id is None:
                skill.id = self._next_id("skills")
            else:
                stored = self._skills.get(skill.id)
                if stored is None:
                    raise NotFoundError(f"Skill '{skill.id}' not found", skill_id=skill.id)
                if skill.experience < stored.experience:
                    raise ValidationError(
                        f"Experience of skill '{skill.id}' cannot decrease "
                        f"({stored.experience} -> {skill.experience})",
                        skill_id=skill.id,
                    )
            self._skills[skill.id] = copy.deepcopy(skill)
            return skill

    def list_skills(self, owner_id: Optional[int] = None) -> List[Skill]:
        with self._lock:
            return [
                copy.deepcopy(self._skills[skill_id])
                for skill_id in sorted(self._skills)
                if owner_id is None or self._skills[skill_id].owner_id == owner_id
            ]

    def delete_skill(self, skill_id: int) -> None:
        with self.transaction():
            if skill_id not in self._skills:
                raise NotFoundError(f"Skill '{skill_id}' not found", skill_id=skill_id)
            del self._skills[skill_id]
            self._project_skills = {pair for pair in self._project_skills if pair[1] != skill_id}

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def get_project(self, project_id: int) -> Project:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                raise NotFoundError(f"Project '{project_id}' not found", project_id=project_id)
            return copy.deepcopy(project)

    def save_project(self, project: Project) -> Project:
        if not project.name or not project.name.strip():
            raise ValidationError("Project name is required")

        with self.transaction():
            if project.id is None:
                project.id = self._next_id("projects")
            elif project.id not in self._projects:
                raise NotFoundError(f"Project '{project.id}' not found", project_id=project.id)
            self._projects[project.id] = copy.deepcopy(project)
            return project

    def list_projects(self, owner_id: Optional[int] = None) -> List[Project]:
        with self._lock:
            return [
                copy.deepcopy(self._projects[project_id])
                for project_id in sorted(self._projects)
                if owner_id is None or self._projects[project_id].owner_id == owner_id
            ]

    def list_project_skills(self, project_id: int) -> List[Skill]:
        with self._lock:
            if project_id not in self._projects:
                raise NotFoundError(f"Project '{project_id}' not found", project_id=project_id)
            skill_ids = sorted(skill_id for pid, skill_id in self._project_skills if pid == project_id)
            return [copy.deepcopy(self._skills[skill_id]) for skill_id in skill_ids if skill_id in self._skills]

    def add_project_skill(self, project_id: int, skill_id: int) -> None:
        with self.transaction():
            if project_id not in self._projects:
                raise NotFoundError(f"Project '{project_id}' not found", project_id=project_id)
            if skill_id not in self._skills:
                raise NotFoundError(f"Skill '{skill_id}' not found", skill_id=skill_id)
            self._project_skills.add((project_id, skill_id))

    def remove_project_skill(self, project_id: int, skill_id: int) -> None:
        with self.transaction():
            self._project_skills.discard((project_id, skill_id))

    # ------------------------------------------------------------------
    # Task completions
    # ------------------------------------------------------------------

    def get_task_completion(self, card_id: int) -> Optional[TaskCompletion]:
        with self._lock:
            completion = self._completions.get(card_id)
            return copy.deepcopy(completion) if completion else None

    def save_task_completion(self, completion: TaskCompletion) -> None:
        with self.transaction():
            if completion.card_id in self._completions:
                raise ConflictError(
                    f"Card '{completion.card_id}' already has a completion record",
                    card_id=completion.card_id,
                )
            self._completions[completion.card_id] = copy.deepcopy(completion)

    def list_task_completions(self, user_id: Optional[int] = None) -> List[TaskCompletion]:
        with self._lock:
            return [
                copy.deepcopy(self._completions[card_id])
                for card_id in sorted(self._completions)
                if user_id is None or self._completions[card_id].user_id == user_id
            ]


class JsonFileRepository(InMemoryRepository):
    """In-memory store persisted as JSON files under ``<root>/<storage_dir>/data``."""

    STORAGE_DIR_ENV = "PROGRESSOR_STORAGE_DIR"
    DEFAULT_STORAGE_DIR = ".progressor"

    def __init__(self, root: Path | str, storage_dir: Optional[str] = None):
        super().__init__()
        self._persisted: Dict[str, Optional[str]] = {}
        try:
            self.root = Path(root).resolve()
            name = storage_dir or os.getenv(self.STORAGE_DIR_ENV) or self.DEFAULT_STORAGE_DIR
            self.base_dir = self.root / name
            self.data_dir = self.base_dir / "data"

            try:
                self.data_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Failed to create storage directories: {e}")
                raise RuntimeError(f"Could not initialize storage at {self.root}: {e}")

            self._load()
            logger.info(f"Repository opened at {self.data_dir}")

        except Exception as e:
            log_error_with_context(e, {"operation": "repository_init", "root": str(root)})
            raise

    def _table_path(self, table: str) -> Path:
        return self.data_dir / f"{table}.json"

    def _read_table(self, table: str, default: Any) -> Any:
        path = self._table_path(table)
        if not path.exists():
            self._persisted[table] = None
            return default
        text = path.read_text(encoding="utf-8")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise RuntimeError(f"Corrupt data file {path}: {e}")
        self._persisted[table] = text
        return payload

    def _load(self) -> None:
        self._persisted.clear()
        self._cards = {c["id"]: Card.from_dict(c) for c in self._read_table("cards", [])}
        self._entries = {e["id"]: TimeEntry.from_dict(e) for e in self._read_table("time_entries", [])}
        self._skills = {s["id"]: Skill.from_dict(s) for s in self._read_table("skills", [])}
        self._projects = {p["id"]: Project.from_dict(p) for p in self._read_table("projects", [])}
        self._project_skills = {(pair[0], pair[1]) for pair in self._read_table("project_skills", [])}
        self._completions = {
            c["card_id"]: TaskCompletion.from_dict(c) for c in self._read_table("task_completions", [])
        }
        self._sequences = dict(self._read_table("sequences", {}))

    def _commit(self) -> None:
        """Write every changed table, or none of them.

        All temporary files are staged before any table is replaced. If a
        replace fails, tables already replaced get their previous contents
        back before the error propagates.
        """
        tables = {
            "cards": [self._cards[k].to_dict() for k in sorted(self._cards)],
            "time_entries": [self._entries[k].to_dict() for k in sorted(self._entries)],
            "skills": [self._skills[k].to_dict() for k in sorted(self._skills)],
            "projects": [self._projects[k].to_dict() for k in sorted(self._projects)],
            "project_skills": [list(pair) for pair in sorted(self._project_skills)],
            "task_completions": [self._completions[k].to_dict() for k in sorted(self._completions)],
            "sequences": self._sequences,
        }
        changed = {}
        for table, payload in tables.items():
            text = json.dumps(payload, indent=2)
            if text != self._persisted.get(table):
                changed[table] = text

        staged: Dict[str, Path] = {}
        try:
            for table, text in changed.items():
                tmp_path = self._table_path(table).with_suffix(".json.tmp")
                tmp_path.write_text(text, encoding="utf-8")
                staged[table] = tmp_path
        except Exception:
            for tmp_path in staged.values():
                tmp_path.unlink(missing_ok=True)
            raise

        replaced: List[str] = []
        try:
            for table, tmp_path in staged.items():
                os.replace(tmp_path, self._table_path(table))
                replaced.append(table)
        except Exception:
            self._revert_tables(replaced)
            for table, tmp_path in staged.items():
                if table not in replaced:
                    tmp_path.unlink(missing_ok=True)
            raise

        self._persisted.update(changed)

    def _revert_tables(self, tables: List[str]) -> None:
        for table in tables:
            path = self._table_path(table)
            previous = self._persisted.get(table)
            if previous is None:
                path.unlink(missing_ok=True)
            else:
                path.write_text(previous, encoding="utf-8")
        if tables:
            logger.warning(f"Commit failed; restored tables {', '.join(tables)}")
