"""In-process inference analytics.

Every completed local inference is recorded with its token counts and speed.
The summary also prices the same tokens against a reference cloud model, i.e.
what running the workload in the cloud would have cost.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field

from ..router.complexity import CLOUD_PRICING, create_estimated_cost
from ..router.types import CloudPricing

# Reference model for the "saved vs. cloud" figure
PRIMARY_COMPARISON: CloudPricing = CLOUD_PRICING[0]


@dataclass
class InferenceRecord:
    """One completed local inference."""

    local_model: str
    prompt_tokens: int
    completion_tokens: int
    duration_ms: float
    tokens_per_second: float
    task_type: str = "unknown"
    trace_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)


def format_savings(usd: float) -> str:
    if usd == 0:
        return "$0.00"
    text = f"${abs(usd):,.2f}" if abs(usd) >= 1000 else f"${abs(usd):.2f}"
    return f"-{text}" if usd < 0 else text


class MetricsCollector:
    """Thread-safe collection and aggregation of inference records."""

    def __init__(self, comparison: CloudPricing = PRIMARY_COMPARISON):
        self.comparison = comparison
        self._lock = threading.Lock()
        self._records: list[InferenceRecord] = []
        self._counters: dict[str, int] = defaultdict(int)
        self._start_time = time.time()

    def record_inference(self, record: InferenceRecord) -> None:
        with self._lock:
            self._records.append(record)
            self._counters["total_inferences"] += 1
            self._counters[f"task_{record.task_type}"] += 1
            self._counters[f"model_{record.local_model}"] += 1

    # Lets the collector be injected wherever an analytics callable is expected
    __call__ = record_inference

    def cloud_equivalents(self) -> list[dict]:
        """Estimated cloud cost of all recorded tokens, most expensive first."""
        with self._lock:
            prompt = sum(r.prompt_tokens for r in self._records)
            completion = sum(r.completion_tokens for r in self._records)
        costs = [create_estimated_cost(p, prompt, completion) for p in CLOUD_PRICING]
        costs.sort(key=lambda c: c.estimated_total_usd, reverse=True)
        return [
            {
                "provider": c.provider,
                "model": c.model,
                "estimated_cost_usd": round(c.estimated_total_usd, 6),
            }
            for c in costs
        ]

    def get_summary(self) -> dict:
        """Aggregate summary of everything recorded so far."""
        with self._lock:
            if not self._records:
                return {
                    "total_inferences": 0,
                    "uptime_seconds": round(time.time() - self._start_time, 1),
                }

            durations = sorted(r.duration_ms for r in self._records)
            prompt = sum(r.prompt_tokens for r in self._records)
            completion = sum(r.completion_tokens for r in self._records)
            saved = create_estimated_cost(self.comparison, prompt, completion)

            return {
                "total_inferences": len(self._records),
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "latency": {
                    "mean_ms": round(sum(durations) / len(durations), 1),
                    "min_ms": round(durations[0], 1),
                    "max_ms": round(durations[-1], 1),
                    "p50_ms": round(durations[len(durations) // 2], 1),
                    "p99_ms": round(durations[int(len(durations) * 0.99)], 1),
                },
                "tokens": {
                    "total_prompt": prompt,
                    "total_completion": completion,
                    "total": prompt + completion,
                },
                "avg_tokens_per_second": round(
                    sum(r.tokens_per_second for r in self._records) / len(self._records), 1
                ),
                "savings": {
                    "compared_to": f"{self.comparison.provider} {self.comparison.model}",
                    "usd": round(saved.estimated_total_usd, 6),
                    "formatted": format_savings(saved.estimated_total_usd),
                },
                "task_distribution": {
                    k.replace("task_", "", 1): v
                    for k, v in self._counters.items()
                    if k.startswith("task_")
                },
                "model_distribution": {
                    k.replace("model_", "", 1): v
                    for k, v in self._counters.items()
                    if k.startswith("model_")
                },
            }

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._counters.clear()
            self._start_time = time.time()
