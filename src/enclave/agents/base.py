"""Base worker contract."""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from enclave.core.errors import EnclaveError, LifecycleError, WorkerBusyError
from enclave.core.events import Handler, Observable, WorkerEvent
from enclave.core.models import AgentResult, AgentTask, WorkerRole, WorkerStatus, new_id
from enclave.isolation.base import IsolationRuntime
from enclave.memory.deadlines import ReminderCadence
from enclave.memory.store import MemoryStore
from enclave.utils.clock import utcnow

MAX_TASK_HISTORY = 50


class TaskRecord(BaseModel):
    """Summary of one finished task kept in a worker's history."""

    task_id: str
    type: str
    success: bool
    duration_ms: int
    error: str | None = None
    completed_at: datetime = Field(default_factory=utcnow)


class BaseWorker(ABC):
    """Base class for all workers.

    Subclasses implement:
    - role: the worker's WorkerRole
    - capabilities: short descriptions used in prompts
    - handle(): task logic

    execute() wraps handle() with status tracking, timing and history. Only an idle
    worker accepts a task; the idle/busy status is the sole admission check.
    """

    def __init__(self, memory: MemoryStore, runtime: IsolationRuntime | None = None):
        """Initialize worker.

        Args:
            memory: Shared memory store
            runtime: Isolation runtime for workers that execute commands
        """
        self.memory = memory
        self.runtime = runtime
        self.id = new_id(self.role.value)
        self.status = WorkerStatus.IDLE
        self.task_history: list[TaskRecord] = []
        self.deadline_mode = False
        self.reminder_cadence: ReminderCadence | None = None
        self._events = Observable(source=self.role.value)
        self.logger = structlog.get_logger(self.__module__)

    @property
    @abstractmethod
    def role(self) -> WorkerRole:
        """Worker role."""
        pass

    @property
    @abstractmethod
    def capabilities(self) -> list[str]:
        """What this worker can do, in a few words each."""
        pass

    @abstractmethod
    async def handle(self, task: AgentTask) -> AgentResult:
        """Run the task.

        Raise EnclaveError subclasses for failures that should become a failed result.
        """
        pass

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        return self._events.subscribe(handler)

    def is_available(self) -> bool:
        return self.status == WorkerStatus.IDLE

    def set_status(self, status: WorkerStatus) -> None:
        previous = self.status
        if previous == status:
            return
        self.status = status
        self._events.emit(WorkerEvent.STATUS_CHANGED, previous=previous.value, status=status.value)

    def notify(self, message: str, **data: Any) -> None:
        """Emit a human-readable progress message."""
        self.logger.info("worker_message", role=self.role.value, message=message, **data)
        self._events.emit(WorkerEvent.LOG, message=message, **data)

    def set_runtime(self, runtime: IsolationRuntime | None) -> None:
        self.runtime = runtime

    def set_deadline_mode(self, active: bool, cadence: ReminderCadence | None = None) -> None:
        self.deadline_mode = active
        self.reminder_cadence = cadence if active else None

    def require_runtime(self) -> IsolationRuntime:
        """Return the runtime, or raise if none is running."""
        if self.runtime is None or not self.runtime.is_running():
            raise LifecycleError(f"{self.role.value} worker needs a running isolation runtime")
        return self.runtime

    async def execute(self, task: AgentTask) -> AgentResult:
        """Execute a task.

        Args:
            task: Task to run

        Returns:
            AgentResult; EnclaveError failures come back as success=False

        Raises:
            WorkerBusyError: If the worker is not idle
            LifecycleError: If the task needs a runtime that is not running
        """
        if not self.is_available():
            raise WorkerBusyError(f"{self.role.value} worker is {self.status.value}")

        started = time.monotonic()
        self.set_status(WorkerStatus.THINKING)
        self._events.emit(WorkerEvent.TASK_STARTED, task_id=task.id, task_type=task.type)
        self.logger.info("task_started", role=self.role.value, task_id=task.id, task_type=task.type)

        try:
            result = await self.handle(task)
        except LifecycleError:
            self.set_status(WorkerStatus.ERROR)
            raise
        except EnclaveError as e:
            self.set_status(WorkerStatus.ERROR)
            self.logger.warning("task_failed", role=self.role.value, task_id=task.id, error=str(e))
            result = AgentResult(success=False, error=str(e))
        except Exception as e:
            self.set_status(WorkerStatus.ERROR)
            self.logger.error("task_crashed", role=self.role.value, task_id=task.id, error=str(e), exc_info=True)
            raise
        finally:
            self.set_status(WorkerStatus.IDLE)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self._record(task, result)
        self._events.emit(WorkerEvent.TASK_COMPLETED, task_id=task.id, success=result.success)
        self.logger.info(
            "task_completed",
            role=self.role.value,
            task_id=task.id,
            success=result.success,
            duration_ms=result.duration_ms,
        )
        return result

    def _record(self, task: AgentTask, result: AgentResult) -> None:
        self.task_history.append(
            TaskRecord(
                task_id=task.id,
                type=task.type,
                success=result.success,
                duration_ms=result.duration_ms,
                error=result.error,
            )
        )
        del self.task_history[:-MAX_TASK_HISTORY]
