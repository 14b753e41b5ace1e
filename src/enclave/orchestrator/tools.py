"""Tool schema offered to the model and the executor for its tool calls.

Isolation tools run against the live runtime; memory tools write to the memory store.
Calls run one at a time in the order the model emitted them. A failing call becomes an
``is_error`` tool result and never aborts the rest of the turn, except when no runtime
is running, which the caller must handle.
"""

import json
from typing import Any

import structlog

from enclave.core.errors import EnclaveError, LifecycleError, ToolInputError
from enclave.isolation.base import IsolationRuntime
from enclave.memory.deadlines import compute_weeks_out
from enclave.memory.models import ToolResultContent, ToolUseContent
from enclave.memory.planning import parse_due_date, plan_contributions, plan_microtasks
from enclave.memory.store import MemoryStore

logger = structlog.get_logger(__name__)

MAX_RESULT_CHARS = 50_000


def _schema(name: str, description: str, properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "input_schema": {"type": "object", "properties": properties, "required": required},
    }


TOOL_SCHEMAS: list[dict[str, Any]] = [
    _schema(
        "bash",
        "Execute a bash command in the isolated environment",
        {
            "command": {"type": "string", "description": "The command to execute"},
            "cwd": {"type": "string", "description": "Working directory (optional)"},
        },
        ["command"],
    ),
    _schema(
        "str_replace_editor",
        "View, create, or edit files using string replacement",
        {
            "command": {
                "type": "string",
                "enum": ["view", "create", "str_replace", "insert"],
                "description": "The editor command",
            },
            "path": {"type": "string", "description": "File path"},
            "file_text": {"type": "string", "description": "File content for create"},
            "old_str": {"type": "string", "description": "String to replace"},
            "new_str": {"type": "string", "description": "Replacement or inserted text"},
            "insert_line": {"type": "integer", "description": "Line after which to insert (0 = top)"},
        },
        ["command", "path"],
    ),
    _schema(
        "read_file",
        "Read a file from the isolated environment",
        {"path": {"type": "string", "description": "File path"}},
        ["path"],
    ),
    _schema(
        "write_file",
        "Write content to a file in the isolated environment",
        {
            "path": {"type": "string", "description": "File path"},
            "content": {"type": "string", "description": "File content"},
        },
        ["path", "content"],
    ),
    _schema(
        "list_files",
        "List files in a directory of the isolated environment",
        {"path": {"type": "string", "description": "Directory path"}},
        ["path"],
    ),
    _schema(
        "add_contact",
        "Add a contact to the database",
        {
            "name": {"type": "string", "description": "Contact name"},
            "email": {"type": "string", "description": "Email address"},
            "channels": {
                "type": "array",
                "items": {"type": "string", "enum": ["email", "whatsapp", "slack"]},
                "description": "Communication channels",
            },
            "conversation_style": {
                "type": "string",
                "enum": ["formal", "casual", "technical", "friendly"],
                "description": "Preferred communication style",
            },
            "relationship": {
                "type": "string",
                "enum": ["work", "personal", "mentor", "student", "client"],
                "description": "Relationship type",
            },
            "sample_messages": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Messages written by this contact",
            },
            "notes": {"type": "string", "description": "Additional notes"},
        },
        ["name", "email", "channels", "conversation_style", "relationship"],
    ),
    _schema(
        "add_deadline",
        "Create a deadline with microtask tracking",
        {
            "title": {"type": "string", "description": "Deadline title"},
            "description": {"type": "string", "description": "Deadline description"},
            "due_date": {"type": "string", "description": "Due date (ISO format)"},
            "priority": {
                "type": "string",
                "enum": ["low", "medium", "high", "critical"],
                "description": "Priority level",
            },
        },
        ["title", "description", "due_date", "priority"],
    ),
    _schema(
        "add_journal_entry",
        "Add a journal entry",
        {
            "content": {"type": "string", "description": "Journal content"},
            "mood": {"type": "integer", "description": "Mood score (1-10)"},
            "energy": {"type": "integer", "description": "Energy level (1-10)"},
            "tags": {"type": "array", "items": {"type": "string"}, "description": "Tags"},
        },
        ["content"],
    ),
    _schema(
        "get_questionnaire",
        "Get a validated questionnaire (PHQ-9, GAD-7, ...)",
        {"questionnaire_id": {"type": "string", "description": "Questionnaire id or name, e.g. phq-9"}},
        ["questionnaire_id"],
    ),
    _schema(
        "record_assessment",
        "Record a questionnaire assessment result",
        {
            "questionnaire_id": {"type": "string", "description": "Questionnaire id"},
            "responses": {
                "type": "array",
                "items": {"type": "integer"},
                "description": "Response value for each question",
            },
            "total_score": {"type": "number", "description": "Total score"},
            "interpretation": {"type": "string", "description": "Score interpretation"},
            "severity": {"type": "string", "description": "Severity level"},
        },
        ["questionnaire_id", "responses", "total_score", "interpretation", "severity"],
    ),
]

REQUIRED_FIELDS: dict[str, list[str]] = {
    schema["name"]: schema["input_schema"]["required"] for schema in TOOL_SCHEMAS
}


def validate_tool_input(name: str, tool_input: dict[str, Any]) -> None:
    """Raise ToolInputError if a required field is missing or null."""
    missing = [field for field in REQUIRED_FIELDS.get(name, []) if tool_input.get(field) is None]
    if missing:
        raise ToolInputError(name, missing=missing)


def _truncate(text: str) -> str:
    if len(text) <= MAX_RESULT_CHARS:
        return text
    return text[:MAX_RESULT_CHARS] + f"\n... ({len(text) - MAX_RESULT_CHARS} more characters)"


class ToolExecutor:
    """Runs model tool calls against the runtime and memory store."""

    def __init__(self, memory: MemoryStore, runtime: IsolationRuntime | None = None):
        self.memory = memory
        self.runtime = runtime
        self._handlers = {
            "bash": self._bash,
            "str_replace_editor": self._editor,
            "read_file": self._read_file,
            "write_file": self._write_file,
            "list_files": self._list_files,
            "add_contact": self._add_contact,
            "add_deadline": self._add_deadline,
            "add_journal_entry": self._add_journal_entry,
            "get_questionnaire": self._get_questionnaire,
            "record_assessment": self._record_assessment,
        }

    async def execute(self, tool_use: ToolUseContent) -> ToolResultContent:
        """Run one tool call.

        Returns:
            ToolResultContent; failures are reported with is_error=True

        Raises:
            LifecycleError: If an isolation tool is called with no running runtime
        """
        handler = self._handlers.get(tool_use.name)
        if handler is None:
            return ToolResultContent(tool_use_id=tool_use.id, content=f"Unknown tool: {tool_use.name}", is_error=True)

        logger.info("tool_call", tool=tool_use.name, tool_use_id=tool_use.id)
        try:
            validate_tool_input(tool_use.name, tool_use.input)
            content, is_error = await handler(tool_use.input)
        except LifecycleError:
            raise
        except (EnclaveError, OSError, ValueError) as e:
            logger.warning("tool_call_failed", tool=tool_use.name, error=str(e))
            content, is_error = f"Tool execution error: {e}", True

        self.memory.record_action(
            f"tool:{tool_use.name}",
            {"tool_use_id": tool_use.id, "input": tool_use.input, "is_error": is_error},
        )
        return ToolResultContent(tool_use_id=tool_use.id, content=_truncate(content), is_error=is_error)

    def _require_runtime(self) -> IsolationRuntime:
        if self.runtime is None or not self.runtime.is_running():
            raise LifecycleError("No isolation session is running")
        return self.runtime

    # Isolation tools

    async def _bash(self, data: dict[str, Any]) -> tuple[str, bool]:
        result = await self._require_runtime().execute(data["command"], cwd=data.get("cwd"))
        output = result.stdout + (f"\nSTDERR:\n{result.stderr}" if result.stderr else "")
        return output or "(no output)", not result.ok

    async def _read_text(self, path: str) -> str:
        return (await self._require_runtime().read_file(path)).decode("utf-8", errors="replace")

    async def _editor(self, data: dict[str, Any]) -> tuple[str, bool]:
        runtime = self._require_runtime()
        command = data["command"]
        path = data["path"]

        if command == "view":
            return await self._read_text(path), False

        if command == "create":
            if data.get("file_text") is None:
                raise ToolInputError("str_replace_editor", missing=["file_text"])
            await runtime.write_file(path, data["file_text"])
            self.memory.add_active_file(path)
            return f"Created {path}", False

        if command == "str_replace":
            if data.get("old_str") is None:
                raise ToolInputError("str_replace_editor", missing=["old_str"])
            current = await self._read_text(path)
            if data["old_str"] not in current:
                return f"String not found in {path}", True
            await runtime.write_file(path, current.replace(data["old_str"], data.get("new_str") or "", 1))
            self.memory.add_active_file(path)
            return f"Updated {path}", False

        if command == "insert":
            missing = [name for name in ("insert_line", "new_str") if data.get(name) is None]
            if missing:
                raise ToolInputError("str_replace_editor", missing=missing)
            lines = (await self._read_text(path)).split("\n")
            line = int(data["insert_line"])
            if not 0 <= line <= len(lines):
                raise ToolInputError("str_replace_editor", message=f"insert_line {line} is outside 0..{len(lines)}")
            lines.insert(line, data["new_str"])
            await runtime.write_file(path, "\n".join(lines))
            self.memory.add_active_file(path)
            return f"Inserted at line {line} in {path}", False

        return f"Unknown editor command: {command}", True

    async def _read_file(self, data: dict[str, Any]) -> tuple[str, bool]:
        return await self._read_text(data["path"]), False

    async def _write_file(self, data: dict[str, Any]) -> tuple[str, bool]:
        await self._require_runtime().write_file(data["path"], data["content"])
        self.memory.add_active_file(data["path"])
        return f"Wrote {data['path']}", False

    async def _list_files(self, data: dict[str, Any]) -> tuple[str, bool]:
        files = await self._require_runtime().list_files(data["path"])
        return "\n".join(f"{f.name}/" if f.is_directory else f.name for f in files) or "(empty)", False

    # Memory tools

    async def _add_contact(self, data: dict[str, Any]) -> tuple[str, bool]:
        contact = self.memory.add_contact(**data)
        return f"Added contact: {contact.name} ({contact.id})", False

    async def _add_deadline(self, data: dict[str, Any]) -> tuple[str, bool]:
        due_date = parse_due_date(data["due_date"])
        deadline = self.memory.add_deadline(
            title=data["title"],
            due_date=due_date,
            description=data["description"],
            priority=data["priority"],
            microtasks=plan_microtasks(data["title"], max(compute_weeks_out(due_date), 1)),
            contributions=plan_contributions(),
        )
        return (
            f"Created deadline: {deadline.title} ({deadline.weeks_out} weeks out, {deadline.phase.value} phase, "
            f"{len(deadline.microtasks)} microtasks)",
            False,
        )

    async def _add_journal_entry(self, data: dict[str, Any]) -> tuple[str, bool]:
        entry = self.memory.add_journal_entry(
            content=data["content"],
            mood=data.get("mood"),
            energy=data.get("energy"),
            tags=data.get("tags"),
        )
        return f"Journal entry recorded ({entry.id})", False

    async def _get_questionnaire(self, data: dict[str, Any]) -> tuple[str, bool]:
        questionnaire = self.memory.get_questionnaire(data["questionnaire_id"])
        return json.dumps(questionnaire.model_dump(mode="json"), indent=2, ensure_ascii=False), False

    async def _record_assessment(self, data: dict[str, Any]) -> tuple[str, bool]:
        assessment = self.memory.record_assessment(
            questionnaire_id=data["questionnaire_id"],
            responses=data["responses"],
            total_score=data["total_score"],
            interpretation=data["interpretation"],
            severity=data["severity"],
        )
        trend = f", trend {assessment.trend.value}" if assessment.trend else ""
        return (
            f"Assessment recorded: {assessment.questionnaire} - Score: {assessment.total_score} "
            f"({assessment.interpretation}{trend})",
            False,
        )
