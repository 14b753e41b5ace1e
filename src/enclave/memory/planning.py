"""Deadline decomposition into microtasks and planned worker contributions."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import TypeAdapter, ValidationError

from enclave.core.errors import ToolInputError
from enclave.core.models import WorkerRole
from enclave.memory.models import AgentContribution, Assignee, ContributionType, Microtask

AGENT_KEYWORDS = ("research", "search", "draft", "format", "gather data")
USER_KEYWORDS = ("define", "review", "decide", "approve", "submit")

MICROTASK_MINUTES = 30

_datetime_adapter = TypeAdapter(datetime)


@dataclass(frozen=True)
class StageTemplate:
    """One fixed stage of a deadline plan."""

    stage: str
    week: Callable[[int], int]
    title: str
    description: str


STAGE_TEMPLATES = [
    StageTemplate(
        stage="planning",
        week=lambda weeks_out: weeks_out,
        title="Define scope and outline",
        description="Define scope, research similar work, create an outline",
    ),
    StageTemplate(
        stage="building",
        week=lambda weeks_out: weeks_out - 4,
        title="Draft main content and gather data",
        description="Draft the main content, gather data, build the structure",
    ),
    StageTemplate(
        stage="refining",
        week=lambda weeks_out: weeks_out - 2,
        title="Polish and fill gaps",
        description="Review the draft, fill gaps, polish",
    ),
    StageTemplate(
        stage="finalizing",
        week=lambda weeks_out: 1,
        title="Final review and submit",
        description="Final review, format check, submit",
    ),
]


def infer_assignee(title: str) -> Assignee:
    """Guess who should do a microtask from its wording."""
    lower = title.lower()
    if any(keyword in lower for keyword in AGENT_KEYWORDS):
        return Assignee.AGENT
    if any(keyword in lower for keyword in USER_KEYWORDS):
        return Assignee.USER
    return Assignee.BOTH


def plan_microtasks(title: str, weeks_out: int) -> list[Microtask]:
    """One microtask per stage, each depending on the one before it.

    Week offsets are clipped to at least 1 so deadlines due this week still get a plan.
    """
    microtasks: list[Microtask] = []
    for template in STAGE_TEMPLATES:
        previous = microtasks[-1].id if microtasks else None
        microtasks.append(
            Microtask(
                title=template.title,
                description=f"{template.description} for {title}",
                estimated_minutes=MICROTASK_MINUTES,
                assignee=infer_assignee(template.title),
                due_week=max(template.week(weeks_out), 1),
                contributes_to=template.stage,
                dependencies=[previous] if previous else [],
            )
        )
    return microtasks


def plan_contributions() -> list[AgentContribution]:
    return [
        AgentContribution(type=ContributionType.RESEARCH, description="Background research", agent=WorkerRole.RESEARCHER),
        AgentContribution(type=ContributionType.DRAFT, description="Initial draft preparation", agent=WorkerRole.REPORTER),
        AgentContribution(type=ContributionType.REVIEW, description="Code and analysis review", agent=WorkerRole.CODER),
        AgentContribution(type=ContributionType.ORGANIZE, description="Structure and formatting", agent=WorkerRole.REPORTER),
        AgentContribution(type=ContributionType.REMIND, description="Progress reminders", agent=WorkerRole.COMPANION),
    ]


def parse_due_date(value: Any) -> datetime:
    """Accept a datetime or an ISO-8601 string."""
    try:
        return _datetime_adapter.validate_python(value)
    except ValidationError:
        raise ToolInputError("deadline", message=f"Invalid due date: {value!r}") from None
