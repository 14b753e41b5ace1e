"""Core data models for Enclave."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from enclave.utils.clock import utcnow


class WorkerRole(str, Enum):
    """Roles of the workers in the pool."""

    COMPANION = "companion"
    CODER = "coder"
    RESEARCHER = "researcher"
    REPORTER = "reporter"


class WorkerStatus(str, Enum):
    """Worker availability states. Only IDLE accepts new work."""

    IDLE = "idle"
    THINKING = "thinking"
    EXECUTING = "executing"
    WAITING = "waiting"
    ERROR = "error"


class TaskPriority(str, Enum):
    """Priority of an AgentTask."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class AgentTask(BaseModel):
    """A typed unit of work handed to a worker."""

    id: str = Field(default_factory=lambda: new_id("task"), description="Task identifier")
    type: str = Field(..., description="Task type tag (e.g. code, research, journal)")
    input: dict[str, Any] = Field(default_factory=dict, description="Task payload")
    priority: TaskPriority = Field(TaskPriority.NORMAL, description="Task priority")
    deadline: datetime | None = Field(None, description="Optional due time for the task")
    delegated_by: WorkerRole | None = Field(
        None, description="Worker that first delegated this task; never overwritten"
    )
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")


class AgentResult(BaseModel):
    """Result of worker execution."""

    success: bool = Field(..., description="Whether execution succeeded")
    output: Any = Field(None, description="Worker-specific output payload")
    artifacts: list[str] = Field(default_factory=list, description="Paths or identifiers produced")
    next_steps: list[str] = Field(default_factory=list, description="Suggested follow-up actions")
    error: str | None = Field(None, description="Error message if failed")
    duration_ms: int = Field(0, description="Execution time in milliseconds")
    timestamp: datetime = Field(default_factory=utcnow, description="Execution timestamp")
