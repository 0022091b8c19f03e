"""Per-request performance traces.

Each chat request gets a short trace id and records model load time,
time-to-first-token, generation speed, token counts, the context size sent
and whether the model was already resident.
"""

from __future__ import annotations

import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Mapping

logger = logging.getLogger(__name__)

# Load times below this mean the model was already resident
WARM_THRESHOLD_MS = 500

_NS_PER_MS = 1_000_000
_NS_PER_SEC = 1_000_000_000


def _now_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class PerfTrace:
    trace_id: str
    started_at_ms: float
    model: str
    backend_url: str
    total_ms: int = 0
    model_load_ms: int = 0
    time_to_first_token_ms: int = 0
    tokens_per_sec: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    context_tokens: int = 0
    was_warm: bool = False
    num_ctx: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def create_perf_trace(model: str, backend_url: str, started_at_ms: float | None = None) -> PerfTrace:
    return PerfTrace(
        trace_id=uuid.uuid4().hex[:8],
        started_at_ms=_now_ms() if started_at_ms is None else started_at_ms,
        model=model,
        backend_url=backend_url,
    )


def finalize_perf_trace(
    trace: PerfTrace,
    timings: Mapping[str, Any],
    first_token_at_ms: float,
    num_ctx: int,
    now_ms: float | None = None,
) -> PerfTrace:
    """Return a completed copy of ``trace`` from the backend's final frame.

    Backend durations are nanoseconds. ``first_token_at_ms`` is 0 when no
    text was streamed, in which case TTFT equals the total time.
    """
    finished = _now_ms() if now_ms is None else now_ms
    total_ms = finished - trace.started_at_ms
    load_ms = (timings.get("load_duration") or 0) / _NS_PER_MS
    eval_count = timings.get("eval_count") or 0
    eval_seconds = (timings.get("eval_duration") or 0) / _NS_PER_SEC
    tokens_per_sec = eval_count / eval_seconds if eval_seconds > 0 else 0.0
    prompt_tokens = timings.get("prompt_eval_count") or 0
    ttft = first_token_at_ms - trace.started_at_ms if first_token_at_ms > 0 else total_ms

    return dataclasses.replace(
        trace,
        total_ms=round(total_ms),
        model_load_ms=round(load_ms),
        time_to_first_token_ms=round(ttft),
        tokens_per_sec=round(tokens_per_sec, 1),
        prompt_tokens=prompt_tokens,
        completion_tokens=eval_count,
        context_tokens=prompt_tokens + eval_count,
        was_warm=load_ms < WARM_THRESHOLD_MS,
        num_ctx=num_ctx,
    )


def format_perf_trace(trace: PerfTrace) -> str:
    warm = "warm" if trace.was_warm else "cold"
    return (
        f"[perf:{trace.trace_id}] {trace.model} ({warm}) "
        f"load={trace.model_load_ms}ms ttft={trace.time_to_first_token_ms}ms "
        f"tok/s={trace.tokens_per_sec} prompt={trace.prompt_tokens} "
        f"completion={trace.completion_tokens} ctx={trace.num_ctx} "
        f"total={trace.total_ms}ms"
    )


def log_perf_trace(trace: PerfTrace) -> None:
    """Emit ``trace`` as one log line.

    Handler failures are reported by the logging module, not raised.
    """
    logger.info(
        format_perf_trace(trace),
        extra={
            "trace_id": trace.trace_id,
            "model": trace.model,
            "latency_ms": trace.total_ms,
            "ttft_ms": trace.time_to_first_token_ms,
            "tokens_per_sec": trace.tokens_per_sec,
            "num_ctx": trace.num_ctx,
            "was_warm": trace.was_warm,
        },
    )
