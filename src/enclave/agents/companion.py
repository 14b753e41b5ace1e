"""Companion worker: the primary worker that owns the specialist pool.

The companion answers check-ins, questionnaires and journal entries itself and hands
everything else to a specialist. A busy specialist never rejects work: the task is
queued per role and drained, in order, as soon as that specialist reports idle again.
"""

import asyncio
import random
from collections import deque
from typing import Any

from enclave.agents.base import BaseWorker
from enclave.core.errors import EnclaveError, NotFoundError, ToolInputError
from enclave.core.events import Notification, WorkerEvent
from enclave.core.models import AgentResult, AgentTask, TaskPriority, WorkerRole, WorkerStatus
from enclave.memory.deadlines import REMINDER_CADENCE, DeadlinePhase, ReminderCadence
from enclave.memory.models import CheckInTrigger, Deadline
from enclave.memory.questionnaires import instructions_for
from enclave.utils.clock import utcnow

DELEGATION_MAP: dict[str, WorkerRole] = {
    "code": WorkerRole.CODER,
    "debug": WorkerRole.CODER,
    "implement": WorkerRole.CODER,
    "review_code": WorkerRole.CODER,
    "search": WorkerRole.RESEARCHER,
    "research": WorkerRole.RESEARCHER,
    "summarize": WorkerRole.RESEARCHER,
    "literature_review": WorkerRole.RESEARCHER,
    "fact_check": WorkerRole.RESEARCHER,
    "email": WorkerRole.REPORTER,
    "deadline": WorkerRole.REPORTER,
    "report": WorkerRole.REPORTER,
    "digest": WorkerRole.REPORTER,
}

CHECK_IN_PROMPTS: dict[CheckInTrigger, list[str]] = {
    CheckInTrigger.MORNING: [
        "Bom dia! Como você está se sentindo hoje?",
        "Good morning! Any thoughts occupying your mind this morning?",
        "Começando o dia - qual é a prioridade hoje?",
    ],
    CheckInTrigger.EVENING: [
        "Como foi seu dia?",
        "Algo que você gostaria de registrar antes de encerrar?",
        "Any wins or challenges from today worth noting?",
    ],
    CheckInTrigger.RANDOM: [
        "Só passando para ver como você está...",
        "Quick check - everything okay?",
        "Pausa para respirar - como está o nível de energia?",
    ],
    CheckInTrigger.POST_DEADLINE: [
        "Deadline entregue! Como você está se sentindo?",
        "Parabéns pela entrega! Quer desabafar sobre como foi o processo?",
        "You made it! Time to decompress - how are you feeling?",
    ],
}

LOW_SCORE_THRESHOLD = 3


class CompanionWorker(BaseWorker):
    """Primary worker: delegates to specialists and holds the deadline-mode flag."""

    role = WorkerRole.COMPANION

    @property
    def capabilities(self) -> list[str]:
        return [
            "Delegate tasks to specialist workers",
            "Morning, evening and ad-hoc check-ins",
            "Deliver validated questionnaires",
            "Record journal entries",
            "Coordinate deadline mode across all workers",
            "Combine results from several workers",
        ]

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._pool: dict[WorkerRole, BaseWorker] = {}
        self._queues: dict[WorkerRole, deque[AgentTask]] = {}
        self._draining: set[WorkerRole] = set()
        self._drain_tasks: set[asyncio.Task] = set()
        self.completed_delegations: dict[str, AgentResult] = {}
        self.focus_deadline_id: str | None = None

    # Pool

    def register(self, worker: BaseWorker) -> None:
        """Add a specialist to the pool and bring it in line with the current deadline mode."""
        role = worker.role
        self._pool[role] = worker
        self._queues.setdefault(role, deque())
        worker.subscribe(lambda notification: self._on_worker_event(role, notification))
        worker.set_deadline_mode(self.deadline_mode, self.reminder_cadence)
        self.logger.debug("worker_registered", role=role.value, worker_id=worker.id)

    def get_worker(self, role: WorkerRole) -> BaseWorker:
        try:
            return self._pool[role]
        except KeyError:
            raise NotFoundError("worker", role.value) from None

    @property
    def workers(self) -> list[BaseWorker]:
        return list(self._pool.values())

    def queued(self, role: WorkerRole) -> int:
        return len(self._queues.get(role, ()))

    # Delegation

    async def delegate(self, role: WorkerRole, task: AgentTask) -> AgentResult:
        """Hand a task to the specialist for ``role``.

        Args:
            role: Target specialist
            task: Task to run; delegated_by is filled in only when absent

        Returns:
            The specialist's result, or a queued marker when it is busy
        """
        worker = self._pool.get(role)
        if worker is None:
            self.notify(f"{role.value} worker not available, handling directly")
            return await self._handle_directly(task)

        if task.delegated_by is None:
            task = task.model_copy(update={"delegated_by": self.role})

        if not worker.is_available():
            self._queues[role].append(task)
            self.logger.info("delegation_queued", role=role.value, task_id=task.id, depth=len(self._queues[role]))
            self._events.emit(WorkerEvent.QUEUED, to=role.value, task_id=task.id)
            return AgentResult(
                success=True,
                output={"queued": True, "agent": role.value},
                next_steps=[f"Task queued for {role.value} worker"],
            )

        self.logger.info("delegating", role=role.value, task_id=task.id, task_type=task.type)
        self._events.emit(WorkerEvent.DELEGATED, to=role.value, task_id=task.id)
        return await worker.execute(task)

    def _on_worker_event(self, role: WorkerRole, notification: Notification) -> None:
        if notification.event != WorkerEvent.STATUS_CHANGED:
            return
        if notification.data.get("status") != WorkerStatus.IDLE.value:
            return
        if not self._queues.get(role) or role in self._draining:
            return
        drain = asyncio.create_task(self._drain(role))
        self._drain_tasks.add(drain)
        drain.add_done_callback(self._drain_tasks.discard)

    async def _drain(self, role: WorkerRole) -> None:
        worker = self._pool[role]
        queue = self._queues[role]
        self._draining.add(role)
        try:
            while queue and worker.is_available():
                task = queue.popleft()
                self._events.emit(WorkerEvent.DELEGATED, to=role.value, task_id=task.id, queued=True)
                try:
                    result = await worker.execute(task)
                except EnclaveError as e:
                    self.logger.error("queued_task_failed", role=role.value, task_id=task.id, error=str(e))
                    result = AgentResult(success=False, error=str(e))
                self.completed_delegations[task.id] = result
        finally:
            self._draining.discard(role)

    async def wait_for_pending(self) -> None:
        """Wait until every queue drain that has started has finished."""
        while self._drain_tasks:
            await asyncio.gather(*list(self._drain_tasks))

    def synthesize_results(self, results: list[tuple[WorkerRole, AgentResult]]) -> AgentResult:
        """Combine several workers' results into one.

        Args:
            results: (role, result) pairs in the order they were produced

        Returns:
            A result that succeeds only if every input succeeded
        """
        failed = [(role, result) for role, result in results if not result.success]
        return AgentResult(
            success=not failed,
            output={
                "results": [
                    {"agent": role.value, "output": result.output} for role, result in results if result.success
                ],
                "errors": [{"agent": role.value, "error": result.error} for role, result in failed],
            },
            artifacts=[artifact for _, result in results for artifact in result.artifacts],
            next_steps=[step for _, result in results for step in result.next_steps],
            error=f"{len(failed)} agent(s) failed" if failed else None,
        )

    # Deadline mode

    @property
    def default_priority(self) -> TaskPriority:
        return TaskPriority.CRITICAL if self.deadline_mode else TaskPriority.NORMAL

    @property
    def current_cadence(self) -> ReminderCadence | None:
        return self.reminder_cadence

    def activate_deadline_mode(self, deadline: Deadline) -> bool:
        """Switch every worker into deadline mode.

        Activation while already active is a no-op.

        Returns:
            True if the mode was switched on by this call
        """
        if self.deadline_mode:
            self.logger.debug("deadline_mode_already_active", deadline_id=self.focus_deadline_id)
            return False
        cadence = REMINDER_CADENCE[deadline.phase]
        self.focus_deadline_id = deadline.id
        self._broadcast(True, cadence)
        self.logger.warning("deadline_mode_activated", deadline_id=deadline.id, title=deadline.title)
        self._events.emit(
            WorkerEvent.DEADLINE_MODE,
            active=True,
            deadline_id=deadline.id,
            cadence=cadence.value,
            notified=[role.value for role in self._pool],
        )
        return True

    def deactivate_deadline_mode(self) -> None:
        if not self.deadline_mode:
            return
        self.focus_deadline_id = None
        self._broadcast(False, None)
        self.logger.info("deadline_mode_deactivated")
        self._events.emit(WorkerEvent.DEADLINE_MODE, active=False)

    def refresh_deadline_mode(self) -> bool:
        """Activate deadline mode if any open deadline has reached the taskforce phase.

        While active, the cadence follows the focus deadline's current phase. The mode
        is left once that deadline is no longer open, then re-entered for the next
        taskforce deadline if there is one.

        Returns:
            Whether deadline mode is active afterwards
        """
        active = self.memory.get_active_deadlines()
        focus = next((d for d in active if d.id == self.focus_deadline_id), None)
        if self.deadline_mode and focus is None:
            self.deactivate_deadline_mode()

        if self.deadline_mode:
            self._follow_phase(focus)
        else:
            urgent = [d for d in active if d.phase == DeadlinePhase.TASKFORCE]
            if urgent:
                self.activate_deadline_mode(urgent[0])
        return self.deadline_mode

    def _follow_phase(self, focus: Deadline) -> None:
        cadence = REMINDER_CADENCE[focus.phase]
        if cadence == self.reminder_cadence:
            return
        self._broadcast(True, cadence)
        self.logger.info(
            "deadline_cadence_changed", deadline_id=focus.id, phase=focus.phase.value, cadence=cadence.value
        )
        self._events.emit(
            WorkerEvent.DEADLINE_MODE,
            active=True,
            deadline_id=focus.id,
            cadence=cadence.value,
            notified=[role.value for role in self._pool],
        )

    def _broadcast(self, active: bool, cadence: ReminderCadence | None) -> None:
        self.set_deadline_mode(active, cadence)
        for worker in self._pool.values():
            worker.set_deadline_mode(active, cadence)

    # Task handling

    async def handle(self, task: AgentTask) -> AgentResult:
        role = DELEGATION_MAP.get(task.type)
        if role is not None:
            return await self.delegate(role, task)

        if task.type == "check_in":
            return self._check_in(task)
        if task.type == "questionnaire":
            return self._deliver_questionnaire(task)
        if task.type == "journal":
            return self._journal(task)
        if task.type == "activate_deadline_mode":
            return self._activate_for_task(task)
        return await self._handle_directly(task)

    def _check_in(self, task: AgentTask) -> AgentResult:
        value = task.input.get("trigger", CheckInTrigger.RANDOM.value)
        try:
            trigger = CheckInTrigger(value)
        except ValueError:
            raise ToolInputError("check_in", message=f"Unknown check-in trigger: {value}") from None
        prompt = random.choice(CHECK_IN_PROMPTS[trigger])
        entry = self.memory.add_journal_entry(
            content=f"Check-in initiated ({trigger.value})",
            trigger=trigger,
            tags=["check-in", trigger.value],
        )
        return AgentResult(
            success=True,
            output={"prompt": prompt, "trigger": trigger.value, "check_in_id": entry.id},
        )

    def _deliver_questionnaire(self, task: AgentTask) -> AgentResult:
        identifier = task.input.get("questionnaire_id") or task.input.get("questionnaire") or "phq-9"
        try:
            questionnaire = self.memory.get_questionnaire(identifier)
        except NotFoundError:
            available = ", ".join(q.name for q in self.memory.list_questionnaires())
            return AgentResult(
                success=False,
                error=f'Questionnaire "{identifier}" not found. Available: {available}',
            )

        self.notify(f"Delivering questionnaire: {questionnaire.full_name}")
        return AgentResult(
            success=True,
            output={
                "questionnaire": questionnaire.model_dump(mode="json"),
                "instructions": instructions_for(questionnaire),
            },
        )

    def _journal(self, task: AgentTask) -> AgentResult:
        content = task.input.get("content")
        if not content:
            raise ToolInputError("journal", missing=["content"])
        mood = task.input.get("mood")
        energy = task.input.get("energy")
        entry = self.memory.add_journal_entry(
            content=content,
            mood=mood,
            energy=energy,
            tags=task.input.get("tags"),
        )

        today = utcnow().date().isoformat()
        if mood is not None and mood <= LOW_SCORE_THRESHOLD:
            self.memory.add_key_fact(f"Low mood reported on {today}")
        if energy is not None and energy <= LOW_SCORE_THRESHOLD:
            self.memory.add_key_fact(f"Low energy reported on {today}")

        return AgentResult(
            success=True,
            output={
                "entry": entry.model_dump(mode="json"),
                "message": "Journal entry saved. Thank you for sharing.",
            },
        )

    def _activate_for_task(self, task: AgentTask) -> AgentResult:
        deadline_id = task.input.get("deadline_id")
        if not deadline_id:
            raise ToolInputError("activate_deadline_mode", missing=["deadline_id"])
        requested = self.memory.get_deadline(deadline_id)
        switched = self.activate_deadline_mode(requested)
        # An already active mode keeps its focus; report that one.
        focus = requested if switched else self.memory.get_deadline(self.focus_deadline_id)
        return AgentResult(
            success=True,
            output={
                "mode": "deadline_taskforce",
                "activated": switched,
                "deadline_id": focus.id,
                "cadence": self.reminder_cadence.value if self.reminder_cadence else None,
                "message": f"All workers now focusing on: {focus.title}",
            },
        )

    async def _handle_directly(self, task: AgentTask) -> AgentResult:
        self.notify(f"Handling directly: {task.type}")
        return AgentResult(
            success=True,
            output={
                "handled": "directly",
                "task": task.type,
                "message": "Task processed by companion worker",
            },
        )
