"""Shared memory: conversation, contacts, deadlines and journal."""

from enclave.memory.deadlines import DeadlinePhase, DeadlinePriority, compute_phase, compute_weeks_out
from enclave.memory.models import Contact, Deadline, JournalEntry, Message, Microtask, SharedMemory
from enclave.memory.store import MemoryStore

__all__ = [
    "Contact",
    "Deadline",
    "DeadlinePhase",
    "DeadlinePriority",
    "JournalEntry",
    "MemoryStore",
    "Message",
    "Microtask",
    "SharedMemory",
    "compute_phase",
    "compute_weeks_out",
]
