"""System prompt assembly."""

import json

from enclave.core.models import AgentResult, WorkerRole
from enclave.isolation.models import BackendKind, IsolationProfile
from enclave.memory.store import MemoryStore

UPCOMING_DAYS = 7
KEY_FACT_LIMIT = 5
EXPERTISE_LIMIT = 5
RESULT_PREVIEW_CHARS = 4000

GUIDELINES = """Guidelines:
- Be proactive and execute tasks when clearly requested
- For research tasks, consider PubMed and academic sources
- Break work into small chunks with clear structure
- Reply in the user's language (English or Portuguese)
- Confirm before destructive operations"""

BACKEND_LABELS = {
    BackendKind.CONTAINER: "container",
    BackendKind.VM: "virtual machine",
}


def build_system_prompt(
    memory: MemoryStore,
    profile: IsolationProfile | None = None,
    backend: BackendKind | None = None,
    deadline_mode: bool = False,
    agent_result: AgentResult | None = None,
    worker: WorkerRole | None = None,
) -> str:
    """Build the system prompt for one model call.

    Args:
        memory: Memory store supplying the user profile, deadlines and key facts
        profile: Isolation profile of the live session, if any
        backend: Backend kind of the live session, if any
        deadline_mode: Whether deadline mode is active
        agent_result: Result of the worker that handled this message
        worker: Role of that worker

    Returns:
        Prompt text
    """
    user = memory.memory.user
    sections = [f"You are Enclave, a personal assistant for {user.name or 'the user'}."]

    if backend is not None:
        sections.append(f"You have access to an isolated {BACKEND_LABELS[backend]} and a pool of specialist workers.")
    else:
        sections.append("No isolated environment is running, so command and file tools are unavailable.")

    about = []
    if user.title:
        about.append(f"User's title: {user.title}")
    if user.expertise:
        about.append(f"Expertise: {', '.join(user.expertise[:EXPERTISE_LIMIT])}")
    if user.languages:
        about.append(f"Languages: {', '.join(user.languages)}")
    if about:
        sections.append("\n".join(about))

    if profile is not None:
        network = "enabled" if profile.network.enabled else "disabled"
        sections.append(
            f"Session profile: {profile.name} ({profile.resources.cpu_cores} CPU, "
            f"{profile.resources.memory_gb} GB memory, network {network})"
        )

    if deadline_mode:
        sections.append("DEADLINE MODE ACTIVE - focus on urgent tasks!")

    upcoming = memory.get_upcoming_deadlines(UPCOMING_DAYS)
    if upcoming:
        lines = [f"- {d.title} ({d.phase.value} phase, {d.progress_percent}% complete)" for d in upcoming]
        sections.append(f"Upcoming deadlines (next {UPCOMING_DAYS} days):\n" + "\n".join(lines))

    facts = memory.recent_key_facts(KEY_FACT_LIMIT)
    if facts:
        sections.append("Key facts from conversation:\n" + "\n".join(f"- {fact}" for fact in facts))

    sections.append(GUIDELINES)

    if agent_result is not None and worker is not None:
        outcome = "success" if agent_result.success else "failure"
        lines = [f"[Worker {worker.value} completed the task with {outcome}]"]
        if agent_result.error:
            lines.append(f"Error: {agent_result.error}")
        if agent_result.output is not None:
            preview = json.dumps(agent_result.output, default=str, ensure_ascii=False)
            lines.append(f"Output: {preview[:RESULT_PREVIEW_CHARS]}")
        if agent_result.next_steps:
            lines.append(f"Suggested next steps: {', '.join(agent_result.next_steps)}")
        sections.append("\n".join(lines))

    return "\n\n".join(sections)
