"""Shared memory records.

All records are pydantic models. Dates serialize to ISO-8601 and are parsed back into
datetimes on load. Deadline fields that depend on the clock or on microtask state are
computed fields: they are written out for readers but never accepted as input.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, computed_field, field_validator

from enclave.core.models import WorkerRole, new_id
from enclave.memory.deadlines import (
    DeadlinePhase,
    DeadlinePriority,
    compute_phase,
    compute_weeks_out,
    to_naive_utc,
)
from enclave.utils.clock import utcnow


# Conversation


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseContent(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultContent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[TextContent | ToolUseContent | ToolResultContent, Field(discriminator="type")]


class Message(BaseModel):
    """One conversation turn."""

    id: str = Field(default_factory=lambda: new_id("msg"))
    role: Literal["user", "assistant"]
    content: list[ContentBlock] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    agent_role: WorkerRole | None = Field(None, description="Worker that handled this turn")

    @property
    def text(self) -> str:
        """Concatenated text blocks."""
        return "".join(block.text for block in self.content if isinstance(block, TextContent))

    @property
    def tool_uses(self) -> list[ToolUseContent]:
        return [block for block in self.content if isinstance(block, ToolUseContent)]


class ToolAction(BaseModel):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class WorkingMemory(BaseModel):
    current_task: dict[str, Any] | None = None
    active_files: list[str] = Field(default_factory=list)
    recent_actions: list[ToolAction] = Field(default_factory=list)
    pending_decisions: list[str] = Field(default_factory=list)


class ConversationBuffer(BaseModel):
    messages: list[Message] = Field(default_factory=list)
    summary: str | None = None
    key_facts: list[str] = Field(default_factory=list)


class UserProfile(BaseModel):
    name: str | None = None
    title: str | None = None
    email: str | None = None
    location: str | None = None
    preferences: dict[str, Any] = Field(default_factory=dict)
    patterns: list[str] = Field(default_factory=list)
    expertise: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)


class ProjectContext(BaseModel):
    name: str | None = None
    path: str | None = None
    type: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    recent_files: list[str] = Field(default_factory=list)


# Contacts


class Channel(str, Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    SLACK = "slack"


class ConversationStyle(str, Enum):
    FORMAL = "formal"
    CASUAL = "casual"
    TECHNICAL = "technical"
    FRIENDLY = "friendly"


class Relationship(str, Enum):
    WORK = "work"
    PERSONAL = "personal"
    MENTOR = "mentor"
    STUDENT = "student"
    CLIENT = "client"


class Contact(BaseModel):
    id: str = Field(default_factory=lambda: new_id("contact"))
    name: str
    email: str
    channels: list[Channel] = Field(default_factory=lambda: [Channel.EMAIL])
    conversation_style: ConversationStyle = ConversationStyle.FRIENDLY
    sample_messages: list[str] = Field(default_factory=list, description="Style fingerprint")
    relationship: Relationship = Relationship.WORK
    notes: str = ""
    last_contact: datetime | None = None


class ContactDatabase(BaseModel):
    contacts: list[Contact] = Field(default_factory=list)


# Deadlines


class DeadlineStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"


class MicrotaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class Assignee(str, Enum):
    USER = "user"
    AGENT = "agent"
    BOTH = "both"


class ContributionType(str, Enum):
    RESEARCH = "research"
    DRAFT = "draft"
    REVIEW = "review"
    ORGANIZE = "organize"
    REMIND = "remind"
    IMPLEMENT = "implement"


class Microtask(BaseModel):
    id: str = Field(default_factory=lambda: new_id("microtask"))
    title: str
    description: str | None = None
    estimated_minutes: int = 30
    assignee: Assignee = Assignee.BOTH
    status: MicrotaskStatus = MicrotaskStatus.PENDING
    due_week: int = Field(1, ge=1, description="Weeks before the due date this should be done")
    contributes_to: str = ""
    dependencies: list[str] = Field(default_factory=list)
    completed_at: datetime | None = None
    result: str | None = None


class AgentContribution(BaseModel):
    type: ContributionType
    description: str
    agent: WorkerRole
    completed_at: datetime | None = None
    result: str | None = None


class Deadline(BaseModel):
    id: str = Field(default_factory=lambda: new_id("deadline"))
    title: str
    description: str = ""
    due_date: datetime
    created_at: datetime = Field(default_factory=utcnow)
    priority: DeadlinePriority = DeadlinePriority.MEDIUM
    microtasks: list[Microtask] = Field(default_factory=list)
    agent_contributions: list[AgentContribution] = Field(default_factory=list)
    status: DeadlineStatus = DeadlineStatus.PENDING
    tags: list[str] = Field(default_factory=list)
    linked_project: str | None = None

    @field_validator("due_date")
    @classmethod
    def _naive_utc_due_date(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @computed_field
    @property
    def weeks_out(self) -> int:
        return compute_weeks_out(self.due_date)

    @computed_field
    @property
    def phase(self) -> DeadlinePhase:
        return compute_phase(self.weeks_out)

    @computed_field
    @property
    def completed_microtasks(self) -> int:
        return sum(1 for m in self.microtasks if m.status == MicrotaskStatus.DONE)

    @computed_field
    @property
    def progress_percent(self) -> int:
        if not self.microtasks:
            return 100 if self.status == DeadlineStatus.DONE else 0
        return round(self.completed_microtasks / len(self.microtasks) * 100)

    def get_microtask(self, microtask_id: str) -> Microtask | None:
        return next((m for m in self.microtasks if m.id == microtask_id), None)

    def pending_microtasks(self) -> list[Microtask]:
        return [m for m in self.microtasks if m.status != MicrotaskStatus.DONE]


class DeadlineDatabase(BaseModel):
    deadlines: list[Deadline] = Field(default_factory=list)


# Journal


class CheckInTrigger(str, Enum):
    MORNING = "morning"
    EVENING = "evening"
    RANDOM = "random"
    POST_DEADLINE = "post_deadline"


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class QuestionnaireCategory(str, Enum):
    DEPRESSION = "depression"
    ANXIETY = "anxiety"
    ADHD = "adhd"
    SLEEP = "sleep"
    BURNOUT = "burnout"
    SELF_EFFICACY = "self_efficacy"


class JournalEntry(BaseModel):
    id: str = Field(default_factory=lambda: new_id("journal"))
    timestamp: datetime = Field(default_factory=utcnow)
    content: str
    mood: int | None = Field(None, ge=1, le=10)
    energy: int | None = Field(None, ge=1, le=10)
    trigger: CheckInTrigger | None = None
    tags: list[str] = Field(default_factory=list)


class QuestionOption(BaseModel):
    value: int
    label: str


class QuestionnaireQuestion(BaseModel):
    id: int
    text: str
    text_pt: str | None = None
    options: list[QuestionOption] = Field(default_factory=list)


class ScoringRange(BaseModel):
    min: int
    max: int
    interpretation: str
    severity: str


class ValidatedQuestionnaire(BaseModel):
    id: str
    name: str
    full_name: str
    category: QuestionnaireCategory
    frequency: Literal["weekly", "biweekly", "monthly", "random"] = "biweekly"
    questions: list[QuestionnaireQuestion] = Field(default_factory=list)
    scoring_ranges: list[ScoringRange] = Field(default_factory=list)

    def interpret(self, total_score: float) -> ScoringRange | None:
        """Scoring range containing ``total_score``, if any."""
        return next((r for r in self.scoring_ranges if r.min <= total_score <= r.max), None)


class AssessmentResult(BaseModel):
    id: str = Field(default_factory=lambda: new_id("assessment"))
    questionnaire: str
    date: datetime = Field(default_factory=utcnow)
    responses: list[int] = Field(default_factory=list)
    total_score: float
    interpretation: str
    severity: str
    trend: Trend | None = None


class JournalDatabase(BaseModel):
    entries: list[JournalEntry] = Field(default_factory=list)
    check_in_schedule: list[CheckInTrigger] = Field(
        default_factory=lambda: [CheckInTrigger.MORNING, CheckInTrigger.EVENING]
    )
    prompts: list[str] = Field(default_factory=list)
    questionnaires: list[ValidatedQuestionnaire] = Field(default_factory=list)
    assessments: list[AssessmentResult] = Field(default_factory=list)


class SharedMemory(BaseModel):
    """Everything workers share, in one value."""

    working: WorkingMemory = Field(default_factory=WorkingMemory)
    conversation: ConversationBuffer = Field(default_factory=ConversationBuffer)
    user: UserProfile = Field(default_factory=UserProfile)
    project: ProjectContext = Field(default_factory=ProjectContext)
    contacts: ContactDatabase = Field(default_factory=ContactDatabase)
    deadlines: DeadlineDatabase = Field(default_factory=DeadlineDatabase)
    journal: JournalDatabase = Field(default_factory=JournalDatabase)
