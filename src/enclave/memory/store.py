"""Durable shared memory with dirty-flag autosave.

The store owns the single SharedMemory value. Contacts, deadlines and the journal are
persisted as one JSON document each under ``data_dir``; the working scratch and the
conversation buffer live only in memory. Every mutating method marks the store dirty,
and a background task flushes dirty state on a fixed interval.
"""

import asyncio
import contextlib
import os
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel

from enclave.config import Settings
from enclave.core.errors import NotFoundError
from enclave.core.events import Handler, MemoryEvent, Observable
from enclave.memory.deadlines import DeadlinePriority, compute_weeks_out, priority_for_weeks, to_naive_utc
from enclave.memory.models import (
    AgentContribution,
    AssessmentResult,
    CheckInTrigger,
    Contact,
    ContactDatabase,
    Deadline,
    DeadlineDatabase,
    DeadlineStatus,
    JournalDatabase,
    JournalEntry,
    Message,
    Microtask,
    MicrotaskStatus,
    ProjectContext,
    SharedMemory,
    ToolAction,
    Trend,
    UserProfile,
    ValidatedQuestionnaire,
)
from enclave.memory.questionnaires import default_questionnaires
from enclave.utils.clock import utcnow

logger = structlog.get_logger(__name__)

CONTACTS_FILE = "contacts.json"
DEADLINES_FILE = "deadlines.json"
JOURNAL_FILE = "journal.json"

MAX_RECENT_ACTIONS = 50
TREND_WINDOW = 3
TREND_BAND = 2.0


def compute_trend(previous_scores: list[float], total_score: float) -> Trend | None:
    """Compare a score with the mean of the last three earlier scores.

    Returns None with fewer than two earlier scores. Lower scores are better.
    """
    if len(previous_scores) < 2:
        return None
    recent = previous_scores[-TREND_WINDOW:]
    diff = total_score - sum(recent) / len(recent)
    if diff < -TREND_BAND:
        return Trend.IMPROVING
    if diff > TREND_BAND:
        return Trend.DECLINING
    return Trend.STABLE


def _write_atomic(path: Path, text: str) -> None:
    temp_file = path.with_suffix(".tmp")
    temp_file.write_text(text, encoding="utf-8")
    os.replace(temp_file, path)


class MemoryStore:
    """Owner of the SharedMemory value and its persistence."""

    def __init__(
        self,
        data_dir: Path | str,
        autosave_interval: float = 60.0,
        user_profile_path: Path | str | None = None,
    ):
        """Initialize memory store.

        Args:
            data_dir: Directory for the persisted JSON documents
            autosave_interval: Seconds between dirty checks
            user_profile_path: Optional JSON file seeding the user profile
        """
        self.data_dir = Path(data_dir)
        self.autosave_interval = autosave_interval
        self.user_profile_path = Path(user_profile_path) if user_profile_path else None
        self.memory = SharedMemory()
        self._dirty = False
        self._autosave_task: asyncio.Task | None = None
        self._events = Observable(source="memory")

    @classmethod
    def from_settings(cls, settings: Settings) -> "MemoryStore":
        return cls(
            data_dir=settings.data_dir,
            autosave_interval=settings.autosave_interval_seconds,
            user_profile_path=settings.user_profile_path,
        )

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _touch(self) -> None:
        self._dirty = True

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        return self._events.subscribe(handler)

    # Persistence

    def _documents(self) -> dict[str, BaseModel]:
        return {
            CONTACTS_FILE: self.memory.contacts,
            DEADLINES_FILE: self.memory.deadlines,
            JOURNAL_FILE: self.memory.journal,
        }

    def _read(self, filename: str, model_cls: type[BaseModel]) -> BaseModel:
        path = self.data_dir / filename
        if not path.exists():
            return model_cls()
        try:
            return model_cls.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("memory_file_load_failed", file=str(path), error=str(e))
            return model_cls()

    def load(self) -> None:
        """Load persisted databases, tolerating missing or unreadable files."""
        self.memory.contacts = self._read(CONTACTS_FILE, ContactDatabase)
        self.memory.deadlines = self._read(DEADLINES_FILE, DeadlineDatabase)
        self.memory.journal = self._read(JOURNAL_FILE, JournalDatabase)

        if not self.memory.journal.questionnaires:
            self.memory.journal.questionnaires = default_questionnaires()

        if self.user_profile_path is not None and self.user_profile_path.exists():
            try:
                self.memory.user = UserProfile.model_validate_json(self.user_profile_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("user_profile_load_failed", file=str(self.user_profile_path), error=str(e))

        self._dirty = False
        logger.info(
            "memory_loaded",
            data_dir=str(self.data_dir),
            contacts=len(self.memory.contacts.contacts),
            deadlines=len(self.memory.deadlines.deadlines),
            journal_entries=len(self.memory.journal.entries),
        )
        self._events.emit(MemoryEvent.LOADED)

    def _snapshot(self) -> dict[str, str]:
        return {filename: model.model_dump_json(indent=2) for filename, model in self._documents().items()}

    def _write_snapshot(self, snapshot: dict[str, str]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        for filename, text in snapshot.items():
            _write_atomic(self.data_dir / filename, text)

    def save(self) -> None:
        """Write all databases synchronously."""
        self._write_snapshot(self._snapshot())
        self._dirty = False
        logger.debug("memory_saved", data_dir=str(self.data_dir))
        self._events.emit(MemoryEvent.SAVED)

    async def flush(self) -> bool:
        """Write dirty state without blocking the event loop.

        The snapshot is taken on the loop; only file writes happen in a thread.

        Returns:
            True if anything was written
        """
        if not self._dirty:
            return False
        snapshot = self._snapshot()
        self._dirty = False
        try:
            await asyncio.to_thread(self._write_snapshot, snapshot)
        except OSError as e:
            self._dirty = True
            logger.error("memory_flush_failed", data_dir=str(self.data_dir), error=str(e))
            return False
        logger.debug("memory_flushed", data_dir=str(self.data_dir))
        self._events.emit(MemoryEvent.SAVED)
        return True

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval)
            await self.flush()

    def start_autosave(self) -> None:
        """Start the periodic flush task. Requires a running event loop."""
        if self._autosave_task is None or self._autosave_task.done():
            self._autosave_task = asyncio.create_task(self._autosave_loop())
            logger.debug("memory_autosave_started", interval=self.autosave_interval)

    async def open(self) -> "MemoryStore":
        """Load from disk and start autosaving."""
        self.load()
        self.start_autosave()
        return self

    async def dispose(self) -> None:
        """Stop autosaving and flush synchronously if anything changed."""
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._autosave_task
            self._autosave_task = None
        if self._dirty:
            self.save()
        logger.info("memory_disposed", data_dir=str(self.data_dir))

    async def __aenter__(self) -> "MemoryStore":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()

    # Working memory and conversation

    def add_message(self, message: Message) -> None:
        self.memory.conversation.messages.append(message)
        self._touch()

    def add_key_fact(self, fact: str) -> None:
        facts = self.memory.conversation.key_facts
        if fact not in facts:
            facts.append(fact)
            self._touch()

    def recent_key_facts(self, limit: int = 5) -> list[str]:
        return self.memory.conversation.key_facts[-limit:]

    def record_action(self, action_type: str, payload: dict[str, Any] | None = None) -> None:
        """Append to the recent-actions ring (last 50 kept)."""
        actions = self.memory.working.recent_actions
        actions.append(ToolAction(type=action_type, payload=payload or {}))
        del actions[:-MAX_RECENT_ACTIONS]
        self._touch()

    def set_current_task(self, task: dict[str, Any] | None) -> None:
        self.memory.working.current_task = task
        self._touch()

    def add_active_file(self, path: str) -> None:
        files = self.memory.working.active_files
        if path not in files:
            files.append(path)
            self._touch()

    def update_user_profile(self, **updates: Any) -> UserProfile:
        self.memory.user = UserProfile.model_validate({**self.memory.user.model_dump(), **updates})
        self._touch()
        return self.memory.user

    def update_project_context(self, **updates: Any) -> ProjectContext:
        self.memory.project = ProjectContext.model_validate({**self.memory.project.model_dump(), **updates})
        self._touch()
        return self.memory.project

    # Contacts

    def add_contact(self, **fields: Any) -> Contact:
        contact = Contact.model_validate(fields)
        self.memory.contacts.contacts.append(contact)
        self._touch()
        logger.info("contact_added", contact_id=contact.id, name=contact.name)
        self._events.emit(MemoryEvent.CONTACT_ADDED, contact_id=contact.id)
        return contact

    def find_contact(self, identifier: str) -> Contact | None:
        """Match by exact email, then by name substring (case-insensitive)."""
        needle = identifier.lower()
        for contact in self.memory.contacts.contacts:
            if contact.email.lower() == needle:
                return contact
        for contact in self.memory.contacts.contacts:
            if needle in contact.name.lower():
                return contact
        return None

    def get_contact(self, contact_id: str) -> Contact:
        for contact in self.memory.contacts.contacts:
            if contact.id == contact_id:
                return contact
        raise NotFoundError("contact", contact_id)

    def update_contact(self, contact_id: str, **updates: Any) -> Contact:
        contacts = self.memory.contacts.contacts
        for index, contact in enumerate(contacts):
            if contact.id == contact_id:
                contacts[index] = Contact.model_validate({**contact.model_dump(), **updates, "id": contact_id})
                self._touch()
                return contacts[index]
        raise NotFoundError("contact", contact_id)

    # Deadlines

    def add_deadline(
        self,
        title: str,
        due_date: datetime,
        description: str = "",
        priority: DeadlinePriority | str | None = None,
        microtasks: list[Microtask] | None = None,
        contributions: list[AgentContribution] | None = None,
        tags: list[str] | None = None,
    ) -> Deadline:
        """Create a deadline. Priority defaults from the weeks remaining."""
        if priority is None:
            priority = priority_for_weeks(compute_weeks_out(due_date))
        deadline = Deadline(
            title=title,
            description=description,
            due_date=to_naive_utc(due_date),
            priority=priority,
            microtasks=microtasks or [],
            agent_contributions=contributions or [],
            tags=tags or [],
        )
        self.memory.deadlines.deadlines.append(deadline)
        self._touch()
        logger.info(
            "deadline_added",
            deadline_id=deadline.id,
            title=title,
            weeks_out=deadline.weeks_out,
            phase=deadline.phase.value,
        )
        self._events.emit(MemoryEvent.DEADLINE_ADDED, deadline_id=deadline.id)
        return deadline

    def get_deadline(self, deadline_id: str) -> Deadline:
        for deadline in self.memory.deadlines.deadlines:
            if deadline.id == deadline_id:
                return deadline
        raise NotFoundError("deadline", deadline_id)

    def update_deadline(self, deadline_id: str, **updates: Any) -> Deadline:
        """Replace stored fields of a deadline. Derived fields cannot be set."""
        deadlines = self.memory.deadlines.deadlines
        for index, deadline in enumerate(deadlines):
            if deadline.id == deadline_id:
                data = deadline.model_dump()
                data.update(updates)
                data["id"] = deadline_id
                deadlines[index] = Deadline.model_validate(data)
                self._touch()
                self._events.emit(MemoryEvent.DEADLINE_UPDATED, deadline_id=deadline_id)
                return deadlines[index]
        raise NotFoundError("deadline", deadline_id)

    def add_microtask(self, deadline_id: str, **fields: Any) -> Microtask:
        deadline = self.get_deadline(deadline_id)
        microtask = Microtask.model_validate(fields)
        deadline.microtasks.append(microtask)
        if deadline.status == DeadlineStatus.DONE:
            deadline.status = DeadlineStatus.IN_PROGRESS
        self._touch()
        return microtask

    def complete_microtask(self, deadline_id: str, microtask_id: str, result: str | None = None) -> Deadline:
        """Mark a microtask done and move the deadline status with its progress."""
        deadline = self.get_deadline(deadline_id)
        microtask = deadline.get_microtask(microtask_id)
        if microtask is None:
            raise NotFoundError("microtask", microtask_id)

        microtask.status = MicrotaskStatus.DONE
        microtask.completed_at = utcnow()
        if result:
            microtask.result = result

        if deadline.progress_percent == 100:
            deadline.status = DeadlineStatus.DONE
        elif deadline.status in (DeadlineStatus.PENDING, DeadlineStatus.DONE):
            deadline.status = DeadlineStatus.IN_PROGRESS
        self._touch()

        logger.info(
            "microtask_completed",
            deadline_id=deadline_id,
            microtask_id=microtask_id,
            progress_percent=deadline.progress_percent,
            phase=deadline.phase.value,
        )
        self._events.emit(
            MemoryEvent.MICROTASK_COMPLETED,
            deadline_id=deadline_id,
            microtask_id=microtask_id,
            progress_percent=deadline.progress_percent,
        )
        return deadline

    def get_active_deadlines(self) -> list[Deadline]:
        active = [d for d in self.memory.deadlines.deadlines if d.status != DeadlineStatus.DONE]
        return sorted(active, key=lambda d: d.due_date)

    def get_upcoming_deadlines(self, days: int = 7) -> list[Deadline]:
        """Open deadlines due within ``days`` (overdue ones included)."""
        cutoff = utcnow() + timedelta(days=days)
        return [d for d in self.get_active_deadlines() if d.due_date <= cutoff]

    # Journal

    def add_journal_entry(
        self,
        content: str,
        mood: int | None = None,
        energy: int | None = None,
        tags: list[str] | None = None,
        trigger: CheckInTrigger | str | None = None,
    ) -> JournalEntry:
        entry = JournalEntry(content=content, mood=mood, energy=energy, tags=tags or [], trigger=trigger)
        self.memory.journal.entries.append(entry)
        self._touch()
        self._events.emit(MemoryEvent.JOURNAL_ENTRY_ADDED, entry_id=entry.id)
        return entry

    def get_recent_entries(self, days: int = 7) -> list[JournalEntry]:
        cutoff = utcnow() - timedelta(days=days)
        return [e for e in self.memory.journal.entries if e.timestamp >= cutoff]

    def get_mood_trend(self, days: int = 14) -> list[tuple[datetime, int]]:
        return [(e.timestamp, e.mood) for e in self.get_recent_entries(days) if e.mood is not None]

    def get_energy_trend(self, days: int = 14) -> list[tuple[datetime, int]]:
        return [(e.timestamp, e.energy) for e in self.get_recent_entries(days) if e.energy is not None]

    def list_questionnaires(self) -> list[ValidatedQuestionnaire]:
        return list(self.memory.journal.questionnaires)

    def get_questionnaire(self, identifier: str) -> ValidatedQuestionnaire:
        """Look a questionnaire up by id or short name (case-insensitive)."""
        needle = identifier.lower()
        for questionnaire in self.memory.journal.questionnaires:
            if questionnaire.id.lower() == needle or questionnaire.name.lower() == needle:
                return questionnaire
        raise NotFoundError("questionnaire", identifier)

    def record_assessment(
        self,
        questionnaire_id: str,
        responses: list[int],
        total_score: float,
        interpretation: str | None = None,
        severity: str | None = None,
    ) -> AssessmentResult:
        """Store an assessment with its trend against earlier scores.

        Missing interpretation or severity are filled from the questionnaire's scoring
        ranges when it is known.
        """
        if interpretation is None or severity is None:
            try:
                scoring = self.get_questionnaire(questionnaire_id).interpret(total_score)
            except NotFoundError:
                scoring = None
            interpretation = interpretation or (scoring.interpretation if scoring else "Unscored")
            severity = severity or (scoring.severity if scoring else "unknown")

        previous = [a.total_score for a in self.memory.journal.assessments if a.questionnaire == questionnaire_id]
        result = AssessmentResult(
            questionnaire=questionnaire_id,
            responses=responses,
            total_score=total_score,
            interpretation=interpretation,
            severity=severity,
            trend=compute_trend(previous, total_score),
        )
        self.memory.journal.assessments.append(result)
        self._touch()
        logger.info(
            "assessment_recorded",
            questionnaire=questionnaire_id,
            total_score=total_score,
            trend=result.trend.value if result.trend else None,
        )
        self._events.emit(MemoryEvent.ASSESSMENT_RECORDED, assessment_id=result.id)
        return result
