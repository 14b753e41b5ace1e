"""Message routing and the model tool loop."""

from enclave.orchestrator.intent import Intent, IntentTag, classify_intent, route
from enclave.orchestrator.orchestrator import Orchestrator, ToolServer, load_tool_servers
from enclave.orchestrator.tools import TOOL_SCHEMAS, ToolExecutor

__all__ = [
    "TOOL_SCHEMAS",
    "Intent",
    "IntentTag",
    "Orchestrator",
    "ToolExecutor",
    "ToolServer",
    "classify_intent",
    "load_tool_servers",
    "route",
]
