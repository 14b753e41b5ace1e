"""Orchestrator: conversation history, worker routing and the model tool loop."""

import asyncio
from pathlib import Path
from typing import Any

import anthropic
import structlog
from anthropic import Anthropic
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from enclave.agents import BaseWorker, CoderWorker, CompanionWorker, ReporterWorker, ResearcherWorker
from enclave.config import Settings, get_settings
from enclave.core.errors import ConfigurationError, NotFoundError, RequestCancelledError
from enclave.core.models import AgentResult, AgentTask, WorkerRole
from enclave.isolation.base import IsolationRuntime
from enclave.isolation.models import IsolationProfile
from enclave.memory.models import Message, TextContent, ToolResultContent, ToolUseContent
from enclave.memory.store import MemoryStore
from enclave.orchestrator.intent import classify_intent, route
from enclave.orchestrator.prompts import build_system_prompt
from enclave.orchestrator.tools import TOOL_SCHEMAS, ToolExecutor

logger = structlog.get_logger(__name__)

MCP_BETA = "mcp-client-2025-04-04"


class ToolServer(BaseModel):
    """An externally reachable tool server passed through to the model call."""

    name: str = Field(..., description="Server name")
    url: str = Field(..., description="Server URL")
    roles: list[WorkerRole] | None = Field(None, description="Workers this server applies to; None means all")
    enabled: bool = Field(True, description="Whether the server is offered at all")

    def applies_to(self, role: WorkerRole) -> bool:
        return self.enabled and (self.roles is None or role in self.roles)

    def to_api(self) -> dict[str, str]:
        return {"type": "url", "url": self.url, "name": self.name}


_tool_server_list = TypeAdapter(list[ToolServer])


def load_tool_servers(path: Path | None) -> list[ToolServer]:
    """Read the tool server list; a missing or malformed file yields no servers."""
    if path is None or not path.exists():
        return []
    try:
        return _tool_server_list.validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning("tool_servers_load_failed", path=str(path), error=str(e))
        return []


class Orchestrator:
    """Routes user messages to workers and drives the model conversation."""

    def __init__(
        self,
        settings: Settings | None = None,
        memory: MemoryStore | None = None,
        runtime: IsolationRuntime | None = None,
        session_profile: IsolationProfile | None = None,
        anthropic_client: Anthropic | None = None,
        tool_servers: list[ToolServer] | None = None,
    ):
        """Initialize orchestrator.

        Args:
            settings: Settings (defaults to get_settings())
            memory: Memory store (defaults to one built from settings)
            runtime: Live isolation runtime, if a session is running
            session_profile: Profile of that session
            anthropic_client: Anthropic client (created from the API key when omitted)
            tool_servers: External tool servers (defaults to the configured file)
        """
        self.settings = settings or get_settings()
        self.memory = memory or MemoryStore.from_settings(self.settings)
        self.runtime = runtime
        self.session_profile = session_profile
        self._client = anthropic_client
        self.tool_servers = (
            tool_servers if tool_servers is not None else load_tool_servers(self.settings.tool_servers_path)
        )

        self.history: list[Message] = []
        self.active_worker = WorkerRole.COMPANION
        self.tools = ToolExecutor(self.memory, runtime)

        self.companion = CompanionWorker(self.memory, runtime)
        self._workers: dict[WorkerRole, BaseWorker] = {WorkerRole.COMPANION: self.companion}
        for worker_cls in (CoderWorker, ResearcherWorker, ReporterWorker):
            worker = worker_cls(self.memory, runtime)
            self.companion.register(worker)
            self._workers[worker.role] = worker

        self._current_request: asyncio.Task | None = None
        self._cancel_requested = False

    async def start(self) -> None:
        """Load memory and start autosaving."""
        await self.memory.open()

    def set_runtime(self, runtime: IsolationRuntime | None, profile: IsolationProfile | None = None) -> None:
        """Attach (or detach) the live runtime for workers and tools."""
        self.runtime = runtime
        self.session_profile = profile
        self.tools.runtime = runtime
        for worker in self._workers.values():
            worker.set_runtime(runtime)

    # Workers

    def get_worker(self, role: WorkerRole) -> BaseWorker:
        try:
            return self._workers[role]
        except KeyError:
            raise NotFoundError("worker", str(getattr(role, "value", role))) from None

    def set_active_worker(self, role: WorkerRole) -> None:
        self.active_worker = self.get_worker(role).role

    @property
    def deadline_mode(self) -> bool:
        return self.companion.deadline_mode

    def tool_servers_for(self, role: WorkerRole) -> list[dict[str, str]]:
        return [server.to_api() for server in self.tool_servers if server.applies_to(role)]

    # Conversation

    def _get_client(self) -> Anthropic:
        if self._client is None:
            if not self.settings.anthropic_api_key:
                raise ConfigurationError("No Anthropic API key configured (set ANTHROPIC_API_KEY)")
            self._client = Anthropic(api_key=self.settings.anthropic_api_key)
        return self._client

    def _record(self, message: Message) -> None:
        self.history.append(message)
        self.memory.add_message(message)

    async def send_message(self, text: str) -> Message:
        """Handle one user message end to end.

        Args:
            text: User message

        Returns:
            The final assistant message of the turn

        Raises:
            ConfigurationError: If no API key and no client are available
            RequestCancelledError: If cancel_current_task() interrupted the model call
            LifecycleError: If a tool needs a runtime and none is running
        """
        client = self._get_client()
        self._cancel_requested = False

        self._record(Message(role="user", content=[TextContent(text=text)]))
        self.companion.refresh_deadline_mode()

        intent = classify_intent(text)
        role = route(intent.tag)
        self.active_worker = role
        task = AgentTask(
            type=intent.tag.value,
            input={"content": text, **intent.params},
            priority=self.companion.default_priority,
        )
        logger.info("message_routed", intent=intent.tag.value, worker=role.value, priority=task.priority.value)

        if role == WorkerRole.COMPANION:
            result = await self.companion.execute(task)
        else:
            result = await self.companion.delegate(role, task)

        return await self._converse(client, result, role)

    async def _converse(self, client: Anthropic, result: AgentResult, role: WorkerRole) -> Message:
        system = build_system_prompt(
            self.memory,
            profile=self.session_profile,
            backend=self.runtime.kind if self.runtime is not None and self.runtime.is_running() else None,
            deadline_mode=self.deadline_mode,
            agent_result=result,
            worker=role,
        )

        rounds = 0
        while True:
            response = await self._call_model(client, system, role)
            message = self._to_message(response, role)
            self._record(message)

            tool_uses = message.tool_uses
            if tool_uses:
                await self._run_tools(tool_uses, role)

            if response.stop_reason != "tool_use" or not tool_uses:
                return message
            rounds += 1
            if rounds > self.settings.max_tool_rounds:
                logger.warning("tool_rounds_exhausted", rounds=rounds)
                return message

    async def _run_tools(self, tool_uses: list[ToolUseContent], role: WorkerRole) -> None:
        """Run tool calls in emission order and record one result per call.

        If a call raises, the calls left without a result are answered with ``is_error``
        results before the error propagates, so the history stays valid for the next turn.
        """
        results: list[ToolResultContent] = []
        try:
            for tool_use in tool_uses:
                results.append(await self.tools.execute(tool_use))
        except (Exception, asyncio.CancelledError) as e:
            reason = str(e) or type(e).__name__
            logger.warning("tool_calls_aborted", error=reason, unanswered=len(tool_uses) - len(results))
            results.extend(
                ToolResultContent(tool_use_id=tool_use.id, content=f"Tool execution error: {reason}", is_error=True)
                for tool_use in tool_uses[len(results):]
            )
            raise
        finally:
            self._record(Message(role="user", content=results, agent_role=role))

    async def _call_model(self, client: Anthropic, system: str, role: WorkerRole) -> Any:
        kwargs: dict[str, Any] = {
            "model": self.settings.anthropic_model,
            "max_tokens": self.settings.anthropic_max_tokens,
            "system": system,
            "messages": self._to_api_messages(),
            "tools": TOOL_SCHEMAS,
        }
        servers = self.tool_servers_for(role)
        if servers:
            kwargs["extra_body"] = {"mcp_servers": servers}
            kwargs["extra_headers"] = {"anthropic-beta": MCP_BETA}

        self._current_request = asyncio.create_task(asyncio.to_thread(client.messages.create, **kwargs))
        try:
            response = await self._current_request
        except asyncio.CancelledError:
            if self._cancel_requested:
                logger.info("model_call_cancelled")
                raise RequestCancelledError("Request cancelled") from None
            raise
        except anthropic.APIError as e:
            logger.error("model_call_failed", error=str(e))
            raise
        finally:
            self._current_request = None

        logger.info(
            "model_call_completed",
            stop_reason=response.stop_reason,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return response

    @staticmethod
    def _to_message(response: Any, role: WorkerRole) -> Message:
        content: list[TextContent | ToolUseContent] = []
        for block in response.content:
            if block.type == "text":
                content.append(TextContent(text=block.text))
            elif block.type == "tool_use":
                content.append(ToolUseContent(id=block.id, name=block.name, input=dict(block.input)))
            else:
                logger.debug("response_block_skipped", block_type=block.type)
        return Message(role="assistant", content=content, agent_role=role)

    def _to_api_messages(self) -> list[dict[str, Any]]:
        """History as API messages, with consecutive same-role turns merged."""
        api_messages: list[dict[str, Any]] = []
        for message in self.history:
            blocks = [
                block.model_dump()
                for block in message.content
                if not (isinstance(block, TextContent) and not block.text)
            ]
            if not blocks:
                continue
            if api_messages and api_messages[-1]["role"] == message.role:
                api_messages[-1]["content"].extend(blocks)
            else:
                api_messages.append({"role": message.role, "content": blocks})
        return api_messages

    # Lifecycle

    def cancel_current_task(self) -> bool:
        """Cancel the in-flight model call, if any.

        A command already dispatched to the runtime may still complete.

        Returns:
            True if a call was cancelled
        """
        if self._current_request is None or self._current_request.done():
            return False
        self._cancel_requested = True
        self._current_request.cancel()
        return True

    async def shutdown(self) -> None:
        self.cancel_current_task()
        await self.companion.wait_for_pending()
        await self.memory.dispose()
        logger.info("orchestrator_shutdown")
