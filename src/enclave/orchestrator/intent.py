"""Keyword intent classification and worker routing.

Rules overlap on purpose and are checked in order: the first matching rule decides the
intent, so "write a script to email my advisor" is a code request, not an email.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from enclave.core.models import WorkerRole


class IntentTag(str, Enum):
    CODE = "code"
    RESEARCH = "research"
    EMAIL = "email"
    DEADLINE = "deadline"
    JOURNAL = "journal"
    QUESTIONNAIRE = "questionnaire"
    DIGEST = "digest"
    CONVERSATION = "conversation"


INTENT_RULES: list[tuple[IntentTag, re.Pattern[str]]] = [
    (IntentTag.CODE, re.compile(r"\b(code|debug|implement|fix|create|write|script|function|class|module)\b")),
    (IntentTag.RESEARCH, re.compile(r"\b(search|find|research|paper|article|literature|pubmed|review)\b")),
    (IntentTag.EMAIL, re.compile(r"\b(email|write to|message|contact|send|draft)\b")),
    (IntentTag.DEADLINE, re.compile(r"\b(deadline|due|submit|delivery|milestone)\b")),
    (IntentTag.JOURNAL, re.compile(r"\b(feeling|mood|journal|check[- ]?in|how am i|energy)\b")),
    (IntentTag.QUESTIONNAIRE, re.compile(r"\b(phq|gad|asrs|questionnaire|assessment|screening)\b")),
    (IntentTag.DIGEST, re.compile(r"\b(digest|summary|status|what('s| is) happening|update)\b")),
]

QUESTIONNAIRE_ID = re.compile(r"\b(phq-?9|gad-?7|asrs-?6?|gse|mbi)", re.IGNORECASE)
EMAIL_ADDRESS = re.compile(r"[\w.+-]+@[\w-]+(\.[\w-]+)+")
DEFAULT_QUESTIONNAIRE = "phq-9"

ROUTING: dict[IntentTag, WorkerRole] = {
    IntentTag.CODE: WorkerRole.CODER,
    IntentTag.RESEARCH: WorkerRole.RESEARCHER,
    IntentTag.EMAIL: WorkerRole.REPORTER,
    IntentTag.DEADLINE: WorkerRole.REPORTER,
    IntentTag.DIGEST: WorkerRole.REPORTER,
    IntentTag.JOURNAL: WorkerRole.COMPANION,
    IntentTag.QUESTIONNAIRE: WorkerRole.COMPANION,
    IntentTag.CONVERSATION: WorkerRole.COMPANION,
}


@dataclass
class Intent:
    tag: IntentTag
    params: dict[str, Any] = field(default_factory=dict)


def _normalize_questionnaire_id(raw: str) -> str:
    lower = raw.lower()
    match = re.fullmatch(r"([a-z]+)-?(\d*)", lower)
    if match and match.group(2):
        return f"{match.group(1)}-{match.group(2)}"
    return lower


def classify_intent(text: str) -> Intent:
    """Classify a user message.

    Args:
        text: Raw message text

    Returns:
        Intent with its tag and any parameters pulled from the text
    """
    lower = text.lower()
    for tag, pattern in INTENT_RULES:
        if pattern.search(lower):
            return Intent(tag=tag, params=_extract_params(tag, text))
    return Intent(tag=IntentTag.CONVERSATION)


def _extract_params(tag: IntentTag, text: str) -> dict[str, Any]:
    if tag == IntentTag.QUESTIONNAIRE:
        match = QUESTIONNAIRE_ID.search(text)
        return {"questionnaire": _normalize_questionnaire_id(match.group(0)) if match else DEFAULT_QUESTIONNAIRE}
    if tag == IntentTag.EMAIL:
        match = EMAIL_ADDRESS.search(text)
        return {"action": "draft", "to": match.group(0)} if match else {"action": "summarize"}
    return {}


def route(tag: IntentTag) -> WorkerRole:
    """Worker for an intent; anything unmapped goes to the companion."""
    return ROUTING.get(tag, WorkerRole.COMPANION)
