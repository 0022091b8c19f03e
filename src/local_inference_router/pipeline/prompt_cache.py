"""Single-slot prompt cache.

Caches the built system prompt and serialized tool schemas between turns so
multi-thousand-token system prompts are not rebuilt on every request. Only
rebuilds when the cache key (model, tools and prompt variant) changes.

The cache holds at most one entry: the workload has one active model at a
time, so a general map would only hold stale prompts. Replacement is a single
attribute assignment, which concurrent readers observe atomically.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class CachedPrompt:
    system_prompt: str
    tool_schemas: str
    hash: str
    created_at: float
    model: str


@dataclass(frozen=True)
class PromptCacheResult:
    system_prompt: str
    tool_schemas: str
    was_cached: bool


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    value = abs(value)
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return sign + "".join(reversed(digits))


def quick_hash(text: str) -> str:
    """Fast non-cryptographic 32-bit hash (djb2 variant), base36-encoded.

    Sufficient for equality checks on cache keys; not for anything adversarial.
    """
    h = 0
    for ch in text:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return _to_base36(h)


def serialize_tools(tools: Sequence[Any] | None) -> str:
    if not tools:
        return ""
    return json.dumps(list(tools), separators=(",", ":"), sort_keys=True)


class PromptCache:
    """One-entry holder for the last built system prompt."""

    def __init__(self) -> None:
        self._slot: CachedPrompt | None = None
        self._stats = {"hits": 0, "misses": 0, "invalidations": 0}

    def get_or_build(
        self,
        model: str,
        build_system_prompt: Callable[[], str],
        tools: Sequence[Any] | None = None,
        variant: str = "",
    ) -> PromptCacheResult:
        """Return the cached prompt, or call ``build_system_prompt`` on a miss.

        The builder is never invoked on a hit. ``variant`` separates prompts
        built for the same model and tools from different inputs (task type,
        caller system prompt).
        """
        tools_json = serialize_tools(tools)
        key = quick_hash(model + tools_json + variant)

        slot = self._slot
        if slot is not None and slot.hash == key:
            self._stats["hits"] += 1
            return PromptCacheResult(
                system_prompt=slot.system_prompt,
                tool_schemas=slot.tool_schemas,
                was_cached=True,
            )

        system_prompt = build_system_prompt()
        self._slot = CachedPrompt(
            system_prompt=system_prompt,
            tool_schemas=tools_json,
            hash=key,
            created_at=time.time(),
            model=model,
        )
        self._stats["misses"] += 1
        return PromptCacheResult(
            system_prompt=system_prompt,
            tool_schemas=tools_json,
            was_cached=False,
        )

    def invalidate(self) -> None:
        self._slot = None
        self._stats["invalidations"] += 1

    @property
    def current(self) -> CachedPrompt | None:
        return self._slot

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)
