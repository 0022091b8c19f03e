"""Model-aware prompt optimizer.

Small local models follow short, rigid instructions better than long prose,
and they run out of context quickly. The optimizer picks a system-prompt
template per model tier and task type, bounds the prompt and history to the
model's input budget, and chooses sampling defaults for the task.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Sequence

from ..router.types import ModelTier, TaskType

if TYPE_CHECKING:
    from .prompt_cache import PromptCache

DEFAULT_CONTEXT_WINDOW_TOKENS = 8192
DEFAULT_RESERVED_OUTPUT_TOKENS = 1024
MIN_INPUT_BUDGET_TOKENS = 256

TRUNCATION_MARKER = "\n...[truncated]...\n"


class TruncationStrategy(str, Enum):
    RECENT_FIRST = "recent-first"
    HEAD_TAIL = "head-tail"
    BALANCED = "balanced"


@dataclass(frozen=True)
class SamplingSettings:
    temperature: float
    top_p: float
    max_output_tokens: int


MAX_SYSTEM_TOKENS = {
    ModelTier.SMALL: 180,
    ModelTier.MEDIUM: 300,
    ModelTier.LARGE: 420,
}

_EXTRA_SYSTEM_TOKENS = {
    ModelTier.SMALL: 160,
    ModelTier.MEDIUM: 260,
    ModelTier.LARGE: 360,
}

BASE_SAMPLING = {
    TaskType.CHAT: SamplingSettings(0.65, 0.9, 768),
    TaskType.CODE: SamplingSettings(0.2, 0.95, 1024),
    TaskType.AGENT: SamplingSettings(0.35, 0.9, 1536),
    TaskType.TOOL: SamplingSettings(0.1, 0.8, 512),
    TaskType.UNKNOWN: SamplingSettings(0.4, 0.9, 768),
}

TEMPLATES: dict[ModelTier, dict[TaskType, str]] = {
    ModelTier.SMALL: {
        TaskType.CHAT: "\n".join([
            "You are a concise assistant running on a small local model.",
            "Rules:",
            "1) Answer directly.",
            "2) Keep responses short and clear.",
            '3) If uncertain, say "I do not know".',
            "Format:",
            "- Answer: <response>",
        ]),
        TaskType.CODE: "\n".join([
            "You are a coding assistant on a small local model.",
            "Rules:",
            "1) Prefer minimal, working edits.",
            "2) Avoid long explanations unless asked.",
            "3) Highlight assumptions briefly.",
            "Format:",
            "1) Plan",
            "2) Code",
            "3) Verify",
        ]),
        TaskType.AGENT: "\n".join([
            "You are an autonomous task assistant on a small local model.",
            "Rules:",
            "1) Break work into small steps.",
            "2) Keep tool instructions explicit.",
            "3) Return a short final status.",
            "Format:",
            "1) Goal",
            "2) Steps",
            "3) Result",
        ]),
        TaskType.TOOL: "\n".join([
            "You are a tool-use assistant on a small local model.",
            "Rules:",
            "1) Pick the simplest valid tool action.",
            "2) Use exact arguments only.",
            "3) Report result tersely.",
            "Format:",
            "1) Action",
            "2) Inputs",
            "3) Output",
        ]),
        TaskType.UNKNOWN: "\n".join([
            "You are a concise assistant on a small local model.",
            "Use short, structured answers and explicit assumptions.",
        ]),
    },
    ModelTier.MEDIUM: {
        TaskType.CHAT: "You are a helpful local assistant.\n"
        "Prefer accurate, practical answers with concise structure.",
        TaskType.CODE: "You are a senior software assistant.\n"
        "Provide robust implementation guidance and short verification steps.",
        TaskType.AGENT: "You are an autonomous task assistant.\n"
        "Plan before action, then report outcomes and blockers clearly.",
        TaskType.TOOL: "You are a precise tool-use assistant.\n"
        "Choose correct tools and keep outputs compact and reproducible.",
        TaskType.UNKNOWN: "You are a practical local assistant.\n"
        "Favor clarity, correctness, and actionable responses.",
    },
    ModelTier.LARGE: {
        TaskType.CHAT: "You are an expert assistant.\n"
        "Answer with depth when needed and summarize key decisions.",
        TaskType.CODE: "You are an expert software engineer.\n"
        "Deliver technically rigorous, testable solutions with tradeoffs.",
        TaskType.AGENT: "You are an expert autonomous problem-solver.\n"
        "Use explicit reasoning, staged execution, and clear outcome tracking.",
        TaskType.TOOL: "You are an expert tool orchestrator.\n"
        "Use reliable actions, validate outputs, and report residual risk.",
        TaskType.UNKNOWN: "You are an expert assistant.\n"
        "Balance completeness with direct, actionable answers.",
    },
}

_SIZE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*b\b")
_WINDOW_RE = re.compile(r"(\d+)\s*k\b")


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


# ── Model introspection ──────────────────────────────────────────────

def resolve_model_tier(model: str) -> ModelTier:
    """Guess the capability tier from a model tag.

    Uses the parameter count in the name (``qwen3:8b``) when present,
    otherwise name hints. Unknown models are treated as medium.
    """
    normalized = model.strip().lower()
    match = _SIZE_RE.search(normalized)
    if match:
        size = float(match.group(1))
        if size <= 8:
            return ModelTier.SMALL
        if size <= 24:
            return ModelTier.MEDIUM
        return ModelTier.LARGE

    if any(hint in normalized for hint in ("tiny", "mini", "small")):
        return ModelTier.SMALL
    if any(hint in normalized for hint in ("70b", "72b", "large")):
        return ModelTier.LARGE
    return ModelTier.MEDIUM


def detect_context_window(model: str) -> int | None:
    normalized = model.strip().lower()
    match = _WINDOW_RE.search(normalized)
    if match and 4 <= int(match.group(1)) <= 1000:
        return int(match.group(1)) * 1000

    for label, tokens in (
        ("8k", 8192), ("16k", 16384), ("32k", 32768), ("64k", 65536), ("128k", 128000),
    ):
        if label in normalized:
            return tokens
    return None


def resolve_context_window(model: str, override: int | None = None) -> int:
    """Context window for ``model``: override, then name hint, then tier default."""
    if override is not None and override > 0:
        return int(override)
    detected = detect_context_window(model)
    if detected:
        return detected
    return {
        ModelTier.SMALL: 8192,
        ModelTier.MEDIUM: 16384,
        ModelTier.LARGE: 32768,
    }[resolve_model_tier(model)]


def resolve_truncation_strategy(
    context_window: int, explicit: TruncationStrategy | str | None = None
) -> TruncationStrategy:
    if explicit:
        return TruncationStrategy(explicit)
    if context_window <= 8192:
        return TruncationStrategy.HEAD_TAIL
    return TruncationStrategy.RECENT_FIRST


# ── Truncation ───────────────────────────────────────────────────────

def estimate_prompt_tokens(text: str) -> int:
    normalized = text.strip()
    return -(-len(normalized) // 4) if normalized else 0


def truncate_text_to_budget(
    text: str,
    token_budget: int,
    strategy: TruncationStrategy | str = TruncationStrategy.HEAD_TAIL,
) -> str:
    """Cut ``text`` down to roughly ``token_budget`` tokens.

    recent-first keeps the tail; head-tail keeps 55% head and the rest tail;
    balanced splits evenly. A marker is inserted where text was removed.
    """
    if token_budget <= 0:
        return ""
    if estimate_prompt_tokens(text) <= token_budget:
        return text

    strategy = TruncationStrategy(strategy)
    max_chars = token_budget * 4
    if max_chars <= len(TRUNCATION_MARKER):
        return text[-max_chars:]

    room = max_chars - len(TRUNCATION_MARKER)
    if strategy == TruncationStrategy.RECENT_FIRST:
        return TRUNCATION_MARKER + text[-room:]

    ratio = 0.5 if strategy == TruncationStrategy.BALANCED else 0.55
    head_chars = int(room * ratio)
    tail_chars = room - head_chars
    tail = text[-tail_chars:] if tail_chars > 0 else ""
    return (text[:head_chars] + TRUNCATION_MARKER + tail)[:max_chars]


def normalize_history(history: Sequence[dict[str, Any]] | None) -> list[dict[str, str]]:
    """Keep non-empty user/assistant turns with stripped string content."""
    result = []
    for message in history or ():
        if message.get("role") not in ("user", "assistant"):
            continue
        content = str(message.get("content") or "").strip()
        if content:
            result.append({"role": message["role"], "content": content})
    return result


def _history_tokens(history: Sequence[dict[str, str]]) -> int:
    return sum(estimate_prompt_tokens(m["content"]) for m in history)


def _truncate_history_recent_first(
    history: list[dict[str, str]], budget: int
) -> list[dict[str, str]]:
    if budget <= 0 or not history:
        return []

    used = 0
    kept: list[dict[str, str]] = []
    for message in reversed(history):
        tokens = estimate_prompt_tokens(message["content"])
        if used + tokens <= budget:
            kept.append(message)
            used += tokens
            continue
        # Nothing fits: keep a cut-down copy of the newest turn
        if not kept:
            cut = truncate_text_to_budget(
                message["content"], budget, TruncationStrategy.RECENT_FIRST
            )
            if cut:
                kept.append({**message, "content": cut})
        break

    kept.reverse()
    return kept


def _truncate_history_head_tail(
    history: list[dict[str, str]], budget: int, head_ratio: float
) -> list[dict[str, str]]:
    if budget <= 0 or not history:
        return []

    early_budget = int(budget * _clamp(head_ratio, 0.1, 0.9))
    late_budget = budget - early_budget
    selected: dict[int, dict[str, str]] = {}

    used = 0
    for index, message in enumerate(history):
        tokens = estimate_prompt_tokens(message["content"])
        if used + tokens > early_budget:
            break
        selected[index] = message
        used += tokens

    used_late = 0
    for index in range(len(history) - 1, -1, -1):
        if index in selected:
            continue
        tokens = estimate_prompt_tokens(history[index]["content"])
        if used_late + tokens > late_budget:
            continue
        selected[index] = history[index]
        used_late += tokens

    remaining = budget - _history_tokens(list(selected.values()))
    for index in range(len(history) - 1, -1, -1):
        if remaining <= 0:
            break
        if index in selected:
            continue
        tokens = estimate_prompt_tokens(history[index]["content"])
        if tokens <= remaining:
            selected[index] = history[index]
            remaining -= tokens

    if not selected:
        latest = history[-1]
        return [{
            **latest,
            "content": truncate_text_to_budget(
                latest["content"], budget, TruncationStrategy.RECENT_FIRST
            ),
        }]
    return [selected[i] for i in sorted(selected)]


def truncate_history(
    history: list[dict[str, str]],
    budget: int,
    strategy: TruncationStrategy | str,
) -> list[dict[str, str]]:
    strategy = TruncationStrategy(strategy)
    if strategy == TruncationStrategy.RECENT_FIRST:
        return _truncate_history_recent_first(history, budget)
    if strategy == TruncationStrategy.BALANCED:
        return _truncate_history_head_tail(history, budget, 0.4)
    return _truncate_history_head_tail(history, budget, 0.3)


# ── System prompt and sampling ───────────────────────────────────────

def build_system_prompt(
    task_type: TaskType | str,
    tier: ModelTier | str,
    additional: str | None = None,
    strategy: TruncationStrategy | str = TruncationStrategy.HEAD_TAIL,
) -> str:
    """Tier template, plus caller requirements, bounded to the tier budget."""
    tier = ModelTier(tier)
    prompt = TEMPLATES[tier][TaskType(task_type)].strip()

    extra = (additional or "").strip()
    if extra:
        extra = truncate_text_to_budget(extra, _EXTRA_SYSTEM_TOKENS[tier], strategy)
        if extra:
            prompt = f"{prompt}\n\nAdditional requirements:\n{extra}"

    return truncate_text_to_budget(prompt, MAX_SYSTEM_TOKENS[tier], strategy)


def optimize_sampling_settings(
    task_type: TaskType | str,
    tier: ModelTier | str,
    context_window: int | None = None,
) -> SamplingSettings:
    base = BASE_SAMPLING[TaskType(task_type)]
    tier = ModelTier(tier)
    temperature, top_p, max_output = base.temperature, base.top_p, base.max_output_tokens

    if tier == ModelTier.SMALL:
        temperature -= 0.1
        top_p -= 0.05
        max_output = min(max_output, 1024)
    elif tier == ModelTier.LARGE and task_type == TaskType.CHAT:
        temperature += 0.05

    if context_window is not None and context_window <= 8192:
        max_output = min(max_output, 896)

    return SamplingSettings(
        temperature=_clamp(round(temperature, 2), 0.0, 1.0),
        top_p=_clamp(round(top_p, 2), 0.1, 1.0),
        max_output_tokens=max(128, int(max_output)),
    )


# ── Full optimization ────────────────────────────────────────────────

@dataclass(frozen=True)
class ContextStats:
    context_window_tokens: int
    input_budget_tokens: int
    before_tokens: int
    after_tokens: int
    dropped_messages: int
    truncated: bool
    strategy: TruncationStrategy


@dataclass
class OptimizedPrompt:
    model_tier: ModelTier
    system_prompt: str
    user_prompt: str
    conversation_history: list[dict[str, str]]
    sampling: SamplingSettings
    context: ContextStats
    prompt_was_cached: bool = False
    messages: list[dict[str, str]] = field(default_factory=list)


def optimize_model_prompt(
    model: str,
    task_type: TaskType | str,
    user_prompt: str,
    system_prompt: str | None = None,
    conversation_history: Sequence[dict[str, Any]] | None = None,
    context_window_tokens: int | None = None,
    reserved_output_tokens: int | None = None,
    truncation_strategy: TruncationStrategy | str | None = None,
    prompt_cache: PromptCache | None = None,
    tools: Sequence[Any] | None = None,
) -> OptimizedPrompt:
    """Fit a turn to ``model``: system template, bounded prompt and history.

    When ``prompt_cache`` is given the system prompt is served from it and only
    rebuilt when the model, tools, task type or caller system prompt change.
    """
    task_type = TaskType(task_type)
    window = resolve_context_window(model, context_window_tokens)
    strategy = resolve_truncation_strategy(window, truncation_strategy)
    tier = resolve_model_tier(model)
    history = normalize_history(conversation_history)

    def build() -> str:
        return build_system_prompt(task_type, tier, system_prompt, strategy)

    was_cached = False
    if prompt_cache is not None:
        cached = prompt_cache.get_or_build(
            model, build, tools=tools,
            variant=f"{task_type.value}|{strategy.value}|{system_prompt or ''}",
        )
        system, was_cached = cached.system_prompt, cached.was_cached
    else:
        system = build()

    raw_user = (user_prompt or "").strip()
    user = raw_user

    reserved = (
        int(reserved_output_tokens)
        if reserved_output_tokens and reserved_output_tokens > 0
        else DEFAULT_RESERVED_OUTPUT_TOKENS
    )
    input_budget = max(
        MIN_INPUT_BUDGET_TOKENS,
        window - int(_clamp(reserved, 128, int(window * 0.7))),
    )

    before = estimate_prompt_tokens(system) + estimate_prompt_tokens(user) + _history_tokens(history)
    system_tokens = estimate_prompt_tokens(system)
    user_tokens = estimate_prompt_tokens(user)

    # Shrink the user prompt first, then the system prompt, then the user
    # prompt again with a smaller floor.
    if system_tokens + user_tokens > input_budget:
        user = truncate_text_to_budget(user, max(64, input_budget - system_tokens), strategy)
        user_tokens = estimate_prompt_tokens(user)
    if system_tokens + user_tokens > input_budget:
        system = truncate_text_to_budget(system, max(48, input_budget - user_tokens), strategy)
        system_tokens = estimate_prompt_tokens(system)
    if system_tokens + user_tokens > input_budget:
        user = truncate_text_to_budget(user, max(16, input_budget - system_tokens), strategy)
        user_tokens = estimate_prompt_tokens(user)

    history_budget = max(0, input_budget - system_tokens - user_tokens)
    kept = truncate_history(history, history_budget, strategy)
    after = system_tokens + user_tokens + _history_tokens(kept)
    dropped = max(0, len(history) - len(kept))

    return OptimizedPrompt(
        model_tier=tier,
        system_prompt=system,
        user_prompt=user,
        conversation_history=kept,
        sampling=optimize_sampling_settings(task_type, tier, window),
        context=ContextStats(
            context_window_tokens=window,
            input_budget_tokens=input_budget,
            before_tokens=before,
            after_tokens=after,
            dropped_messages=dropped,
            truncated=(
                dropped > 0
                or before > after
                or user != raw_user
                or history_budget < _history_tokens(history)
            ),
            strategy=strategy,
        ),
        prompt_was_cached=was_cached,
        messages=[
            {"role": "system", "content": system},
            *kept,
            {"role": "user", "content": user},
        ],
    )
