"""Keyword signals for task-type and internet-need detection.

Detection is deliberately simple and order-dependent: tool presence wins
over any text signal, code signals win over agent signals.
"""

from __future__ import annotations

import re
from typing import Any, Sequence

from .types import Attachment, TaskContext, TaskType

CODE_SIGNALS = (
    "write code",
    "fix this",
    "debug",
    "function",
    "class",
    "implement",
    "refactor",
    "typescript",
    "python",
    "javascript",
    "```",
    "error:",
    "traceback",
    "compile",
    "build",
)

AGENT_SIGNALS = (
    "search for",
    "find and",
    "create a file",
    "run this",
    "step by step",
    "first do",
    "then do",
    "automate",
)

# Word-boundary variants used when routing a raw message; stricter than the
# substring lists so "classic" or "builder" do not read as code.
_ROUTING_CODE_PATTERN = re.compile(
    r"\b(code|function|class|debug|implement|refactor|typescript|python|"
    r"javascript|compile|build)\b"
)
_ROUTING_AGENT_PATTERN = re.compile(
    r"\b(search for|find and|create (?:a )?file|run this|step by step|"
    r"first do|then do|automate)\b"
)

_INTERNET_PATTERNS = re.compile(
    r"\b(search|google|look up|find online|latest|current|today|news)\b"
)

LONG_CONTEXT_HISTORY_TURNS = 20


def detect_task_type(user_content: str, tools: Sequence[Any] | None = None) -> TaskType:
    """Classify a turn as tool, code, agent or chat, checked in that order."""
    if tools:
        return TaskType.TOOL

    lower = user_content.lower()
    if any(s in lower for s in CODE_SIGNALS):
        return TaskType.CODE
    if any(s in lower for s in AGENT_SIGNALS):
        return TaskType.AGENT
    return TaskType.CHAT


def detect_routing_task_type(prompt: str, tools: Sequence[Any] | None = None) -> TaskType:
    """Word-boundary task detection for the complexity router."""
    if tools:
        return TaskType.TOOL

    lower = prompt.lower()
    if _ROUTING_CODE_PATTERN.search(lower):
        return TaskType.CODE
    if _ROUTING_AGENT_PATTERN.search(lower):
        return TaskType.AGENT
    return TaskType.CHAT


def detect_internet_need(prompt: str) -> bool:
    return bool(_INTERNET_PATTERNS.search(prompt.lower()))


def build_task_context(
    prompt: str,
    conversation_history: Sequence[dict[str, str]] | None = None,
    tools: Sequence[Any] | None = None,
    attachments: Sequence[Attachment] | None = None,
) -> TaskContext:
    """Derive a TaskContext from a raw message and its surroundings."""
    history = tuple(conversation_history or ())
    return TaskContext(
        prompt=prompt,
        task_type=detect_routing_task_type(prompt, tools),
        conversation_history=history,
        attachments=tuple(attachments or ()),
        requires_internet_access=detect_internet_need(prompt),
        requires_long_context=len(history) > LONG_CONTEXT_HISTORY_TURNS,
    )
