"""Worker pool: the companion and its specialists."""

from enclave.agents.base import BaseWorker, TaskRecord
from enclave.agents.coder import CoderWorker
from enclave.agents.companion import CompanionWorker
from enclave.agents.reporter import ReporterWorker
from enclave.agents.researcher import ResearcherWorker

__all__ = [
    "BaseWorker",
    "CoderWorker",
    "CompanionWorker",
    "ReporterWorker",
    "ResearcherWorker",
    "TaskRecord",
]
