"""Deadline urgency math.

Everything here is a pure function of the due date and the current time, so derived
values (weeks out, phase, priority) can be recomputed whenever they are read.
"""

import math
from datetime import datetime, timedelta, timezone
from enum import Enum

from enclave.utils.clock import utcnow


class DeadlinePhase(str, Enum):
    """Urgency bucket derived from weeks remaining."""

    PLANNING = "planning"
    BUILDING = "building"
    ACCELERATING = "accelerating"
    FOCUSING = "focusing"
    TASKFORCE = "taskforce"


class DeadlinePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReminderCadence(str, Enum):
    WEEKLY = "weekly"
    TWICE_WEEKLY = "twice_weekly"
    DAILY = "daily"
    TWICE_DAILY = "twice_daily"
    CONTINUOUS = "continuous"


# (minimum weeks out, phase), most relaxed first
PHASE_THRESHOLDS: list[tuple[int, DeadlinePhase]] = [
    (10, DeadlinePhase.PLANNING),
    (6, DeadlinePhase.BUILDING),
    (3, DeadlinePhase.ACCELERATING),
    (1, DeadlinePhase.FOCUSING),
]

# Ordered from least to most urgent.
PHASE_ORDER = [
    DeadlinePhase.PLANNING,
    DeadlinePhase.BUILDING,
    DeadlinePhase.ACCELERATING,
    DeadlinePhase.FOCUSING,
    DeadlinePhase.TASKFORCE,
]

REMINDER_CADENCE = {
    DeadlinePhase.PLANNING: ReminderCadence.WEEKLY,
    DeadlinePhase.BUILDING: ReminderCadence.TWICE_WEEKLY,
    DeadlinePhase.ACCELERATING: ReminderCadence.DAILY,
    DeadlinePhase.FOCUSING: ReminderCadence.TWICE_DAILY,
    DeadlinePhase.TASKFORCE: ReminderCadence.CONTINUOUS,
}

REMINDER_OFFSET_DAYS = {
    DeadlinePhase.PLANNING: 7.0,
    DeadlinePhase.BUILDING: 3.0,
    DeadlinePhase.ACCELERATING: 1.0,
    DeadlinePhase.FOCUSING: 0.5,
    DeadlinePhase.TASKFORCE: 0.0,
}


def to_naive_utc(value: datetime) -> datetime:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def compute_weeks_out(due_date: datetime, now: datetime | None = None) -> int:
    """Whole weeks until ``due_date``, rounded up. Past dates give zero or less."""
    now = to_naive_utc(now) if now else utcnow()
    days = (to_naive_utc(due_date) - now).total_seconds() / 86400
    return math.ceil(days / 7)


def compute_phase(weeks_out: int) -> DeadlinePhase:
    """Bucket weeks remaining into a phase (10+ planning ... under 1 taskforce)."""
    for minimum, phase in PHASE_THRESHOLDS:
        if weeks_out >= minimum:
            return phase
    return DeadlinePhase.TASKFORCE


def priority_for_weeks(weeks_out: int) -> DeadlinePriority:
    if weeks_out <= 1:
        return DeadlinePriority.CRITICAL
    if weeks_out <= 3:
        return DeadlinePriority.HIGH
    if weeks_out <= 6:
        return DeadlinePriority.MEDIUM
    return DeadlinePriority.LOW


def next_reminder(phase: DeadlinePhase, now: datetime | None = None) -> datetime:
    """When the next reminder is due for a deadline in ``phase``."""
    now = now or utcnow()
    return now + timedelta(days=REMINDER_OFFSET_DAYS[phase])
