"""Context window sizing and history trimming.

Instead of blindly sending a model's full native window (which can be 64K+
and slows inference), the window is sized to actual usage with a safety
margin, rounded to a power of two and capped by configuration.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any, Mapping, Sequence, TypeVar

if TYPE_CHECKING:
    from ..config import ContextConfig

MIN_NUM_CTX = 2048
ROLE_OVERHEAD_TOKENS = 4
SAFETY_MARGIN = 1.2

M = TypeVar("M", bound=Mapping[str, Any])


def estimate_tokens(text: str) -> int:
    """Rough token count: ceil(chars / 4)."""
    return math.ceil(len(text) / 4)


def _content_tokens(content: Any) -> int:
    if isinstance(content, str):
        return estimate_tokens(content)
    if isinstance(content, list):
        total = 0
        for part in content:
            if isinstance(part, Mapping) and "text" in part:
                total += estimate_tokens(str(part["text"]))
        return total
    return 0


def estimate_single_message_tokens(message: Mapping[str, Any]) -> int:
    """Tokens for one message, including the per-message role overhead."""
    return _content_tokens(message.get("content")) + ROLE_OVERHEAD_TOKENS


def estimate_message_tokens(
    messages: Sequence[Mapping[str, Any]],
    system_prompt: str | None = None,
) -> int:
    """Estimate the total token count of a message list plus optional system prompt."""
    total = estimate_tokens(system_prompt) if system_prompt else 0
    for msg in messages:
        total += estimate_single_message_tokens(msg)
    return total


def next_power_of_two(n: int) -> int:
    if n <= 1:
        return 1
    return 1 << (n - 1).bit_length()


def compute_num_ctx(
    estimated_tokens: int,
    max_output_tokens: int,
    config: ContextConfig,
    model_context_window: int | None = None,
) -> int:
    """Compute the ``num_ctx`` to send to the backend.

    ``ceil((input + output) * 1.2)`` rounded up to a power of two, floored at
    2048 and capped at ``min(config.max_context_tokens, model window)``.
    """
    needed = math.ceil((estimated_tokens + max_output_tokens) * SAFETY_MARGIN)
    rounded = next_power_of_two(max(needed, MIN_NUM_CTX))

    window = model_context_window or config.max_context_tokens
    hard_cap = min(config.max_context_tokens, window)

    if rounded <= hard_cap:
        return rounded
    # Cap may itself not be a power of two; round it down so the
    # allocation stays aligned, without dropping below the floor.
    capped = 1 << (hard_cap.bit_length() - 1) if hard_cap > 0 else MIN_NUM_CTX
    return max(capped, MIN_NUM_CTX)


def trim_conversation_to_fit(messages: Sequence[M], max_tokens: int) -> list[M]:
    """Keep the most recent messages that fit within ``max_tokens``.

    Always keeps at least the newest message, even when it alone exceeds
    the budget. Returns oldest-first.
    """
    if len(messages) <= 1:
        return list(messages)

    total = 0
    kept: list[M] = []
    for msg in reversed(messages):
        tokens = estimate_single_message_tokens(msg)
        if total + tokens > max_tokens and kept:
            break
        total += tokens
        kept.append(msg)

    kept.reverse()
    return kept
