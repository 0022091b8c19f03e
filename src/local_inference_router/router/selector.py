"""Smart model selector.

Queries the backend for resident models and picks the best one per task
weight. Never hardcodes a single model; adapts to what is currently loaded.

The resident-model snapshot is refreshed at most once per interval. Callers
arriving while a refresh is due share one in-flight refresh task, so no lock
is held across the network call and a down backend is hit at most once per
interval.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from ..config import require_model_tag
from ..providers.base import InferenceBackend
from .types import LoadedModel, ModelSelection, TaskWeight

logger = logging.getLogger(__name__)

REFRESH_INTERVAL_SECONDS = 30.0

QUICK_MAX_PARAMS = 4.0
STANDARD_MAX_PARAMS = 10.0
HEAVY_MIN_PARAMS = 10.0

_BYTES_PER_GB = 1_073_741_824

# Order matters only for readability; any match classifies the message.
_QUICK_SIGNALS = [
    re.compile(r"^(hi|hello|hey|thanks|ok|yes|no|sure)\b"),
    re.compile(r"^what (is|are) "),
    re.compile(r"\b(summarize|tldr|brief)\b"),
    re.compile(r"^(how many|when did|who is|where is)\b"),
]

_HEAVY_SIGNALS = [
    re.compile(
        r"\b(implement|refactor|architect|design|debug|"
        r"write a? ?(full|complete|comprehensive))\b"
    ),
    re.compile(r"\b(analyze|compare|evaluate|review|audit)\b"),
    re.compile(r"\b(step by step|detailed|thorough|in-depth)\b"),
    re.compile(r"```[\s\S]{100,}"),
]

_PARAM_SIZE_RE = re.compile(r"(\d+(?:\.\d+)?)[bB]")
_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)")


def classify_task_weight(
    message: str,
    tools: Sequence[Any] | None = None,
    history_length: int | None = None,
) -> TaskWeight:
    """Classify a message as quick, standard or heavy for model sizing."""
    lower = message.lower()

    if len(lower) < 50 and any(p.search(lower) for p in _QUICK_SIGNALS):
        return TaskWeight.QUICK

    if tools and len(tools) > 3:
        return TaskWeight.HEAVY
    if (history_length or 0) > 20:
        return TaskWeight.HEAVY
    if any(p.search(lower) for p in _HEAVY_SIGNALS):
        return TaskWeight.HEAVY

    return TaskWeight.STANDARD


def extract_family(name: str) -> str:
    without_tag = name.split(":")[0]
    return without_tag.split("/")[-1] or without_tag


def extract_param_size(name: str) -> str:
    """Parameter-size label (e.g. ``"8B"``) guessed from a model name."""
    tag = name.split(":", 1)[1] if ":" in name else name
    match = _PARAM_SIZE_RE.search(tag) or _PARAM_SIZE_RE.search(name)
    return f"{match.group(1)}B" if match else "unknown"


def parse_param_count(parameter_size: str) -> float:
    match = _NUMBER_RE.search(parameter_size)
    return float(match.group(1)) if match else 0.0


def parse_loaded_model(raw: dict[str, Any]) -> LoadedModel:
    name = str(raw.get("name", ""))
    details = raw.get("details") or {}
    parameter_size = details.get("parameter_size") or extract_param_size(name)
    return LoadedModel(
        name=name,
        size_bytes=int(raw.get("size") or 0),
        size_vram=int(raw.get("size_vram") or 0),
        family=details.get("family") or extract_family(name),
        parameter_size=parameter_size,
        parameter_count=parse_param_count(parameter_size),
    )


class ModelSelector:
    """Picks a resident model per task weight."""

    def __init__(
        self,
        preferred_model: str,
        backend: InferenceBackend,
        refresh_interval: float = REFRESH_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.preferred_model = require_model_tag(preferred_model, "preferred model")
        self.backend = backend
        self.refresh_interval = refresh_interval
        self._clock = clock
        self._snapshot: tuple[LoadedModel, ...] = ()
        self._last_refresh: float | None = None
        self._last_refresh_wall: float | None = None
        self._refresh_task: asyncio.Task | None = None

    async def select(self, task_weight: TaskWeight | str = TaskWeight.STANDARD) -> ModelSelection:
        weight = TaskWeight(task_weight)
        await self.refresh_if_needed()

        models = self._snapshot
        available = tuple(m.name for m in models)

        if not models:
            return ModelSelection(
                model=self.preferred_model,
                reason="No loaded models detected; using configured default model",
                task_weight=weight,
                all_available=(),
            )

        if len(models) == 1:
            return ModelSelection(
                model=models[0].name,
                reason="Only one loaded model available",
                task_weight=weight,
                all_available=available,
            )

        ordered = sorted(models, key=lambda m: (m.parameter_count, m.size_bytes))
        preferred = next((m for m in models if m.name == self.preferred_model), None)

        quick = next(
            (m for m in ordered if 0 < m.parameter_count <= QUICK_MAX_PARAMS),
            ordered[0],
        )
        standard = next(
            (
                m for m in reversed(ordered)
                if QUICK_MAX_PARAMS < m.parameter_count <= STANDARD_MAX_PARAMS
            ),
            ordered[(len(ordered) - 1) // 2],
        )
        heavy = next(
            (m for m in reversed(ordered) if m.parameter_count >= HEAVY_MIN_PARAMS),
            ordered[-1],
        )

        if weight == TaskWeight.QUICK:
            selected = quick
        elif weight == TaskWeight.HEAVY:
            selected = heavy
        else:
            selected = preferred or standard

        if weight == TaskWeight.STANDARD and preferred is None:
            reason = (
                f'Configured model "{self.preferred_model}" is not loaded; '
                f"using {selected.parameter_size} model for {weight.value} task"
            )
        else:
            reason = (
                f"Selected {selected.parameter_size} model for {weight.value} task "
                f"({len(models)} loaded models)"
            )

        return ModelSelection(
            model=selected.name,
            reason=reason,
            task_weight=weight,
            all_available=available,
        )

    def classify_task_weight(
        self,
        message: str,
        tools: Sequence[Any] | None = None,
        history_length: int | None = None,
    ) -> TaskWeight:
        return classify_task_weight(message, tools, history_length)

    async def refresh_if_needed(self) -> None:
        """Refresh the snapshot if the interval has elapsed."""
        if (
            self._last_refresh is not None
            and self._clock() - self._last_refresh < self.refresh_interval
        ):
            return

        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._refresh())
            self._refresh_task = task
        # A cancelled caller must not cancel the refresh others are awaiting
        await asyncio.shield(task)

    async def _refresh(self) -> None:
        try:
            raw_models = await self.backend.list_loaded_models()
            self._snapshot = tuple(parse_loaded_model(m) for m in raw_models)
            logger.debug("Refreshed resident models: %s", [m.name for m in self._snapshot])
        except Exception as e:
            # Keep the previous snapshot on network or parsing failures
            logger.debug("Model list refresh failed, keeping snapshot: %s", e)
        finally:
            self._last_refresh = self._clock()
            self._last_refresh_wall = time.time()

    @property
    def loaded_models(self) -> tuple[LoadedModel, ...]:
        return self._snapshot

    @property
    def state(self) -> dict[str, Any]:
        return {
            "preferred_model": self.preferred_model,
            "loaded_models": [
                {
                    "name": m.name,
                    "params": m.parameter_size,
                    "vram_gb": round(m.size_vram / _BYTES_PER_GB, 1),
                }
                for m in self._snapshot
            ],
            "last_refresh": (
                datetime.fromtimestamp(self._last_refresh_wall, timezone.utc).isoformat()
                if self._last_refresh_wall is not None
                else None
            ),
        }
