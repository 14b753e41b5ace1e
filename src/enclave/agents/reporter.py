"""Reporter worker: email drafting, deadline decomposition, reports and reminders."""

import re
from datetime import timedelta
from typing import Any

from enclave.agents.base import BaseWorker
from enclave.core.errors import ToolInputError
from enclave.core.models import AgentResult, AgentTask, WorkerRole
from enclave.memory.deadlines import DeadlinePhase, compute_weeks_out, next_reminder
from enclave.memory.models import Contact, ConversationStyle, Deadline, DeadlineStatus, MicrotaskStatus
from enclave.memory.planning import parse_due_date, plan_contributions, plan_microtasks
from enclave.utils.clock import utcnow

EMAIL_TEMPLATES: dict[ConversationStyle, dict[str, dict[str, str]]] = {
    ConversationStyle.FORMAL: {
        "en": {"greeting": "Dear", "closing": "Best regards"},
        "pt": {"greeting": "Prezado(a)", "closing": "Atenciosamente"},
    },
    ConversationStyle.CASUAL: {
        "en": {"greeting": "Hi", "closing": "Best"},
        "pt": {"greeting": "Oi", "closing": "Abraço"},
    },
    ConversationStyle.TECHNICAL: {
        "en": {"greeting": "Hello", "closing": "Regards"},
        "pt": {"greeting": "Olá", "closing": "Att."},
    },
    ConversationStyle.FRIENDLY: {
        "en": {"greeting": "Hey", "closing": "Cheers"},
        "pt": {"greeting": "E aí", "closing": "Abs"},
    },
}

PORTUGUESE_CHARS = re.compile(r"[ãõáéíóúâêôç]", re.IGNORECASE)

URGENT_PHASES = (DeadlinePhase.TASKFORCE, DeadlinePhase.FOCUSING)
UPCOMING_PHASES = (DeadlinePhase.ACCELERATING, DeadlinePhase.BUILDING)

DIGEST_TASK_LIMIT = 5
DIGEST_DEADLINE_LIMIT = 3
DIGEST_URGENT_WEEKS = 2
REMINDER_TASK_LIMIT = 3


def infer_language(recipient: str, contact: Contact | None = None) -> str:
    """Portuguese for Brazilian recipients or contacts who write in Portuguese, else English."""
    lower = recipient.lower()
    if lower.endswith(".br") or "brasil" in lower or "brazil" in lower:
        return "pt"
    if contact is not None and any(PORTUGUESE_CHARS.search(m) for m in contact.sample_messages):
        return "pt"
    return "en"


def email_template(style: ConversationStyle | str, language: str) -> dict[str, str]:
    try:
        templates = EMAIL_TEMPLATES[ConversationStyle(style)]
    except ValueError:
        templates = EMAIL_TEMPLATES[ConversationStyle.FRIENDLY]
    return templates.get(language, templates["en"])


def overall_progress(deadlines: list[Deadline]) -> int:
    """Mean progress of open deadlines; 100 when nothing is open."""
    if not deadlines:
        return 100
    return round(sum(d.progress_percent for d in deadlines) / len(deadlines))


class ReporterWorker(BaseWorker):
    """Drafts emails, plans deadlines and writes progress reports."""

    role = WorkerRole.REPORTER

    @property
    def capabilities(self) -> list[str]:
        return [
            "Draft emails in the recipient's style and language",
            "Break deadlines into 30-minute microtasks",
            "Track microtask completion",
            "Daily digests, weekly reports and deadline reports",
            "Gentle, urgent and final reminders",
        ]

    async def handle(self, task: AgentTask) -> AgentResult:
        if task.type == "email":
            return self._email(task.input)
        if task.type == "deadline":
            return self._deadline(task.input)
        if task.type == "digest":
            return self._daily_digest()
        if task.type == "report":
            return self._report(task.input)
        if task.type == "reminder":
            return self._reminder(task.input)
        return AgentResult(success=False, error=f"Unknown task type: {task.type}")

    # Email

    def _email(self, data: dict[str, Any]) -> AgentResult:
        action = data.get("action", "draft")
        if action == "draft":
            return self._draft_email(data)
        if action == "reply":
            return self._draft_reply(data)
        if action == "summarize":
            return self._summarize_emails(data)
        return AgentResult(success=False, error=f"Unknown email action: {action}")

    def _draft_email(self, data: dict[str, Any]) -> AgentResult:
        recipient = data.get("to")
        if not recipient:
            raise ToolInputError("email", missing=["to"])
        contact = self.memory.find_contact(recipient)
        style = contact.conversation_style if contact else ConversationStyle.FRIENDLY
        language = data.get("language") or infer_language(recipient, contact)
        self.notify(f"Drafting {language} email to {recipient} ({style.value} style)")

        return AgentResult(
            success=True,
            output={
                "draft": {
                    "to": recipient,
                    "subject": data.get("subject", ""),
                    "style": style.value,
                    "relationship": contact.relationship.value if contact else "work",
                    "language": language,
                    "context": data.get("context") or data.get("content", ""),
                    "sample_messages": contact.sample_messages if contact else [],
                },
                "template": email_template(style, language),
                "status": "ready_to_generate",
            },
            next_steps=["Generate email body", "Review for tone alignment", "Present draft to user"],
        )

    def _draft_reply(self, data: dict[str, Any]) -> AgentResult:
        reply_to = data.get("reply_to")
        if not reply_to:
            raise ToolInputError("email", missing=["reply_to"])
        return AgentResult(
            success=True,
            output={
                "reply_to": reply_to,
                "context": data.get("context", ""),
                "language": data.get("language", "en"),
                "status": "ready_to_generate",
            },
            next_steps=["Analyze original message", "Generate contextual reply", "Match sender style"],
        )

    def _summarize_emails(self, data: dict[str, Any]) -> AgentResult:
        emails = data.get("emails") or []
        return AgentResult(
            success=True,
            output={
                "email_count": len(emails),
                "timeframe": data.get("timeframe", "today"),
                "status": "ready_to_summarize",
            },
            next_steps=["Parse email content", "Extract action items", "Generate digest"],
        )

    # Deadlines

    def _deadline(self, data: dict[str, Any]) -> AgentResult:
        action = data.get("action", "check")
        if action == "create":
            return self._create_deadline(data)
        if action == "update":
            return self._update_deadline(data)
        if action == "complete_microtask":
            return self._complete_microtask(data)
        if action == "check":
            return self._check_deadlines()
        if action == "decompose":
            return self._decompose(data)
        return AgentResult(success=False, error=f"Unknown deadline action: {action}")

    def _create_deadline(self, data: dict[str, Any]) -> AgentResult:
        missing = [name for name in ("title", "due_date") if not data.get(name)]
        if missing:
            raise ToolInputError("deadline", missing=missing)

        title = data["title"]
        due_date = parse_due_date(data["due_date"])
        deadline = self.memory.add_deadline(
            title=title,
            due_date=due_date,
            description=data.get("description", ""),
            priority=data.get("priority"),
            microtasks=plan_microtasks(title, max(compute_weeks_out(due_date), 1)),
            contributions=plan_contributions(),
            tags=data.get("tags"),
        )
        reminder = next_reminder(deadline.phase)
        self.notify(f"Created deadline: {title} ({deadline.weeks_out} weeks out, {deadline.phase.value} phase)")

        return AgentResult(
            success=True,
            output={"deadline": deadline.model_dump(mode="json"), "next_reminder": reminder.isoformat()},
            next_steps=[
                f"First microtask: {deadline.microtasks[0].title}",
                f"Next reminder: {reminder:%Y-%m-%d %H:%M}",
            ],
        )

    def _update_deadline(self, data: dict[str, Any]) -> AgentResult:
        deadline_id = data.get("deadline_id")
        if not deadline_id:
            raise ToolInputError("deadline", missing=["deadline_id"])
        updates = dict(data.get("updates") or {})
        if "due_date" in updates:
            updates["due_date"] = parse_due_date(updates["due_date"])
        deadline = self.memory.update_deadline(deadline_id, **updates)
        return AgentResult(success=True, output={"deadline": deadline.model_dump(mode="json")})

    def _complete_microtask(self, data: dict[str, Any]) -> AgentResult:
        missing = [name for name in ("deadline_id", "microtask_id") if not data.get(name)]
        if missing:
            raise ToolInputError("deadline", missing=missing)
        deadline = self.memory.complete_microtask(data["deadline_id"], data["microtask_id"], data.get("result"))
        microtask = deadline.get_microtask(data["microtask_id"])
        self.notify(f"Microtask completed: {microtask.title} ({deadline.progress_percent}%)")
        return AgentResult(
            success=True,
            output={
                "deadline": deadline.model_dump(mode="json"),
                "completed_microtask": microtask.model_dump(mode="json"),
                "progress_percent": deadline.progress_percent,
            },
        )

    def _check_deadlines(self) -> AgentResult:
        deadlines = sorted(self.memory.get_active_deadlines(), key=lambda d: d.weeks_out)
        urgent = [d for d in deadlines if d.phase in URGENT_PHASES]
        upcoming = [d for d in deadlines if d.phase in UPCOMING_PHASES]
        return AgentResult(
            success=True,
            output={
                "total": len(deadlines),
                "urgent": len(urgent),
                "urgent_deadlines": [d.model_dump(mode="json") for d in urgent],
                "upcoming_deadlines": [d.model_dump(mode="json") for d in upcoming],
                "all_deadlines": [d.model_dump(mode="json") for d in deadlines],
            },
        )

    def _decompose(self, data: dict[str, Any]) -> AgentResult:
        deadline = self.memory.get_deadline(data.get("deadline_id", ""))
        self.notify(f"Further decomposing: {deadline.title}")
        return AgentResult(
            success=True,
            output={
                "deadline": deadline.model_dump(mode="json"),
                "current_microtasks": len(deadline.microtasks),
                "status": "ready_for_decomposition",
            },
            next_steps=["Analyze remaining work", "Create additional 15-30 min microtasks"],
        )

    # Reports

    def _report(self, data: dict[str, Any]) -> AgentResult:
        report_type = data.get("type", "daily")
        if report_type == "daily":
            return self._daily_digest()
        if report_type == "weekly":
            return self._weekly_report()
        if report_type == "deadline":
            return self._deadline_report(data.get("deadline_id", ""))
        return AgentResult(success=False, error=f"Unknown report type: {report_type}")

    def _daily_digest(self) -> AgentResult:
        deadlines = self.memory.get_active_deadlines()
        todays_tasks = [
            m for d in deadlines for m in d.microtasks if m.status == MicrotaskStatus.PENDING and m.due_week <= 1
        ]
        urgent = [d for d in deadlines if d.weeks_out <= DIGEST_URGENT_WEEKS]
        self.logger.info("daily_digest_generated", deadlines=len(deadlines), tasks=len(todays_tasks))
        return AgentResult(
            success=True,
            output={
                "date": utcnow().date().isoformat(),
                "summary": {
                    "total_deadlines": len(deadlines),
                    "urgent_count": len(urgent),
                    "todays_tasks": len(todays_tasks),
                },
                "todays_tasks": [m.model_dump(mode="json") for m in todays_tasks[:DIGEST_TASK_LIMIT]],
                "urgent_deadlines": [d.model_dump(mode="json") for d in urgent[:DIGEST_DEADLINE_LIMIT]],
            },
        )

    def _weekly_report(self) -> AgentResult:
        deadlines = self.memory.memory.deadlines.deadlines
        week_ago = utcnow() - timedelta(days=7)
        completed = [d for d in deadlines if d.status == DeadlineStatus.DONE and d.due_date > week_ago]
        return AgentResult(
            success=True,
            output={
                "week_ending": utcnow().date().isoformat(),
                "completed_deadlines": len(completed),
                "microtasks_completed": sum(d.completed_microtasks for d in deadlines),
                "overall_progress": overall_progress(self.memory.get_active_deadlines()),
            },
        )

    def _deadline_report(self, deadline_id: str) -> AgentResult:
        deadline = self.memory.get_deadline(deadline_id)
        return AgentResult(
            success=True,
            output={
                "deadline": deadline.model_dump(mode="json"),
                "progress": {
                    "percent": deadline.progress_percent,
                    "completed_tasks": deadline.completed_microtasks,
                    "total_tasks": len(deadline.microtasks),
                    "remaining_tasks": [m.model_dump(mode="json") for m in deadline.pending_microtasks()],
                },
                "timeline": {
                    "created": deadline.created_at.isoformat(),
                    "due": deadline.due_date.isoformat(),
                    "weeks_remaining": deadline.weeks_out,
                    "phase": deadline.phase.value,
                },
            },
        )

    # Reminders

    def _reminder(self, data: dict[str, Any]) -> AgentResult:
        deadline = self.memory.get_deadline(data.get("deadline_id", ""))
        kind = data.get("type", "gentle")
        messages = {
            "gentle": f'Reminder: "{deadline.title}" - {deadline.progress_percent}% complete',
            "urgent": f'"{deadline.title}" needs attention! Due in {deadline.weeks_out} week(s)',
            "final": f'FINAL: "{deadline.title}" is due TODAY!',
        }
        if kind not in messages:
            raise ToolInputError("reminder", message=f"Unknown reminder type: {kind}")

        self.notify(f"Sending {kind} reminder for: {deadline.title}")
        pending = [m for m in deadline.microtasks if m.status == MicrotaskStatus.PENDING]
        return AgentResult(
            success=True,
            output={
                "message": messages[kind],
                "deadline": deadline.title,
                "progress": deadline.progress_percent,
                "next_tasks": [m.model_dump(mode="json") for m in pending[:REMINDER_TASK_LIMIT]],
            },
        )
