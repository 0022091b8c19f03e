"""Inference orchestrator: one conversational turn, end to end.

Pipeline stages per turn:
1. Message and tool conversion to the backend wire format
2. Complexity routing (local vs. cloud)
3. Model selection (tier routing or resident-model selection)
4. Prompt optimization (tier template via the prompt cache, sampling)
5. Context sizing (history trim, num_ctx)
6. Streaming chat request, decoded into events
7. Perf trace and best-effort telemetry
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Sequence

import httpx

from .config import ConfigurationError, RouterConfig, require_model_tag
from .observability.metrics import InferenceRecord, MetricsCollector
from .observability.perf import (
    PerfTrace,
    create_perf_trace,
    finalize_perf_trace,
    log_perf_trace,
)
from .pipeline.context import (
    compute_num_ctx,
    estimate_message_tokens,
    trim_conversation_to_fit,
)
from .pipeline.optimizer import OptimizedPrompt, optimize_model_prompt, resolve_model_tier
from .pipeline.prompt_cache import PromptCache
from .pipeline.stream import parse_ndjson_stream
from .providers.base import InferenceBackend
from .providers.ollama import (
    OllamaBackend,
    build_assistant_message,
    build_keep_alive_param,
    convert_messages,
    convert_tools,
    extract_text_content,
)
from .router.complexity import ComplexityRouter, resolve_model_for_complexity
from .router.selector import ModelSelector, classify_task_weight
from .router.signals import detect_task_type
from .router.types import (
    AssistantMessage,
    DoneEvent,
    ErrorEvent,
    ModelTier,
    Route,
    RoutingDecision,
    StartEvent,
    StopReason,
    StreamEvent,
    TaskType,
    TaskWeight,
    TextContent,
    TextDeltaEvent,
    TextEndEvent,
    TextStartEvent,
)

logger = logging.getLogger(__name__)

# Yields the text span and final event of a cloud turn. The orchestrator
# emits the StartEvent itself; handler StartEvents are dropped.
CloudHandler = Callable[
    [RoutingDecision, Sequence[dict[str, Any]], Sequence[dict[str, Any]]],
    AsyncIterator[StreamEvent],
]


@dataclass
class ChatOptions:
    """Caller overrides; these win over optimizer defaults."""

    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class OptimizeResult:
    messages: list[dict[str, Any]]
    options: dict[str, Any]  # temperature, top_p, num_predict, num_ctx
    task_type: TaskType
    tier: ModelTier
    prompt_was_cached: bool
    optimized: OptimizedPrompt


@dataclass
class PreparedRequest:
    body: dict[str, Any]
    model: str
    task_type: TaskType
    task_weight: TaskWeight
    num_ctx: int
    routing: RoutingDecision


def _last_user_index(messages: Sequence[dict[str, Any]]) -> int | None:
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].get("role") == "user":
            return i
    return None


class InferenceOrchestrator:
    """Runs conversational turns against the local backend.

    Collaborators are injectable; by default everything is built from
    ``config``. ``analytics`` may be any sync or async callable taking an
    ``InferenceRecord``.
    """

    def __init__(
        self,
        config: RouterConfig | None = None,
        backend: InferenceBackend | None = None,
        selector: ModelSelector | None = None,
        router: ComplexityRouter | None = None,
        prompt_cache: PromptCache | None = None,
        analytics: Callable[[InferenceRecord], Any] | None = None,
        cloud_handler: CloudHandler | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or RouterConfig()
        self.config.validate()

        self.backend = backend or OllamaBackend.from_config(
            self.config.backend, transport=transport,
        )
        self.selector = selector or ModelSelector(self.config.inference.model, self.backend)
        self.router = router or ComplexityRouter(self.config)
        self.prompt_cache = prompt_cache or PromptCache()
        self.metrics = MetricsCollector()
        self.analytics = analytics if analytics is not None else self.metrics
        self.cloud_handler = cloud_handler

        self._request_count = 0
        self._background: set[asyncio.Task] = set()

    # ── Optimizer stage ──────────────────────────────────────────────

    def optimize_request(
        self,
        model: str,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[dict[str, Any]] | None = None,
        task_type: TaskType | str | None = None,
    ) -> OptimizeResult | None:
        """Apply the prompt optimizer to backend-format ``messages``.

        Returns ``None`` when the optimizer is disabled.
        """
        if not self.config.inference.enable_optimizer:
            return None

        system_text = "\n\n".join(
            m["content"] for m in messages if m.get("role") == "system" and m.get("content")
        )
        user_index = _last_user_index(messages)
        last_user = messages[user_index] if user_index is not None else None
        user_text = (last_user or {}).get("content", "") or ""
        task_type = TaskType(task_type) if task_type else detect_task_type(user_text, tools)
        history = [
            m for i, m in enumerate(messages)
            if m.get("role") in ("user", "assistant") and i != user_index
        ]

        optimized = optimize_model_prompt(
            model,
            task_type,
            user_text,
            system_prompt=system_text or None,
            conversation_history=history,
            prompt_cache=self.prompt_cache,
            tools=tools,
        )

        has_tool_turns = any(m.get("role") == "tool" or m.get("tool_calls") for m in messages)
        if has_tool_turns:
            # Tool exchanges must keep their order; only the system prompt changes
            out = [{"role": "system", "content": optimized.system_prompt}]
            out.extend(m for m in messages if m.get("role") != "system")
        else:
            out = [dict(m) for m in optimized.messages]
            if last_user is None:
                out.pop()
            elif last_user.get("images"):
                out[-1]["images"] = last_user["images"]

        return OptimizeResult(
            messages=out,
            options={
                "temperature": optimized.sampling.temperature,
                "top_p": optimized.sampling.top_p,
                "num_predict": optimized.sampling.max_output_tokens,
                "num_ctx": optimized.context.context_window_tokens,
            },
            task_type=task_type,
            tier=optimized.model_tier,
            prompt_was_cached=optimized.prompt_was_cached,
            optimized=optimized,
        )

    # ── Request preparation ──────────────────────────────────────────

    async def _choose_model(
        self, routing: RoutingDecision, weight: TaskWeight
    ) -> tuple[str, str]:
        if self.config.model_tiers.auto_route:
            choice = resolve_model_for_complexity(routing.complexity, self.config)
            return choice.model, choice.reason
        if self.config.inference.enable_model_selection:
            selection = await self.selector.select(weight)
            return selection.model, selection.reason
        return self.config.inference.model, "model selection disabled"

    def _fit_history(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        limit = self.config.context.summary_trigger_tokens
        if estimate_message_tokens(messages) <= limit:
            return messages

        system = [m for m in messages if m.get("role") == "system"]
        rest = [m for m in messages if m.get("role") != "system"]
        budget = max(0, limit - estimate_message_tokens(system))
        kept = trim_conversation_to_fit(rest, budget)
        logger.info("Trimmed history from %d to %d messages", len(rest), len(kept))
        return system + kept

    async def prepare_request(
        self,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        options: ChatOptions | None = None,
    ) -> PreparedRequest:
        """Build the backend request body for one turn."""
        options = options or ChatOptions()
        backend_messages = convert_messages(messages, system_prompt)
        backend_tools = convert_tools(tools)

        user_index = _last_user_index(messages)
        user_text = (
            extract_text_content(messages[user_index].get("content"))
            if user_index is not None else ""
        )
        history = [
            {"role": m["role"], "content": extract_text_content(m.get("content"))}
            for i, m in enumerate(messages)
            if m.get("role") in ("user", "assistant") and i != user_index
        ]

        weight = classify_task_weight(user_text, backend_tools, len(messages))
        if self.config.context.tool_schema_mode == "lazy" and weight == TaskWeight.QUICK:
            backend_tools = []
        task_type = detect_task_type(user_text, backend_tools)

        routing = await self.router.route_message(user_text, history, backend_tools)
        model, reason = await self._choose_model(routing, weight)
        model = require_model_tag(model)
        logger.debug("Using %s: %s", model, reason, extra={"model": model})
        self._request_count += 1

        optimized = self.optimize_request(model, backend_messages, backend_tools, task_type)
        request_options: dict[str, Any] = {}
        if optimized is not None:
            backend_messages = optimized.messages
            request_options.update(optimized.options)

        if options.temperature is not None:
            request_options["temperature"] = options.temperature
        if options.max_tokens is not None:
            request_options["num_predict"] = options.max_tokens

        backend_messages = self._fit_history(backend_messages)
        max_output = request_options.get(
            "num_predict", self.config.inference.default_max_output_tokens
        )
        num_ctx = compute_num_ctx(
            estimate_message_tokens(backend_messages),
            max_output,
            self.config.context,
            model_context_window=request_options.get("num_ctx"),
        )
        request_options["num_ctx"] = num_ctx

        body: dict[str, Any] = {
            "model": model,
            "messages": backend_messages,
            "stream": True,
            "options": request_options,
            "think": self.config.inference.think,
        }
        if backend_tools:
            body["tools"] = backend_tools
        keep_alive = build_keep_alive_param(self.config.warmup)
        if keep_alive:
            body["keep_alive"] = keep_alive

        logger.debug(
            "Prepared %s turn for %s (num_ctx=%d)", task_type.value, model, num_ctx,
            extra={"model": model, "task_type": task_type.value, "task_weight": weight.value},
        )
        return PreparedRequest(
            body=body,
            model=model,
            task_type=task_type,
            task_weight=weight,
            num_ctx=num_ctx,
            routing=routing,
        )

    # ── Streaming ────────────────────────────────────────────────────

    async def stream_chat(
        self,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run one turn and yield its events.

        Yields ``StartEvent``, then an optional text span, then exactly one
        ``DoneEvent`` or ``ErrorEvent``. Backend failures become an
        ``ErrorEvent``; ``ConfigurationError`` is raised. Closing the
        generator stops reading from the backend.
        """
        partial = AssistantMessage(model=self.config.inference.model)
        try:
            prepared = await self.prepare_request(messages, tools, system_prompt, options)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error("Failed to prepare request: %s", e)
            partial.stop_reason = StopReason.ERROR
            partial.error_message = str(e)
            yield ErrorEvent(error_message=str(e), message=partial)
            return

        if prepared.routing.route == Route.CLOUD:
            if self.cloud_handler is not None:
                partial.model = prepared.routing.cloud_model or prepared.model
                partial.provider = prepared.routing.cloud_provider or partial.provider
                yield StartEvent(partial=partial, routing=prepared.routing)
                async with aclosing(
                    self.cloud_handler(prepared.routing, messages, tools or [])
                ) as events:
                    async for event in events:
                        # The start of the turn has already been emitted.
                        if isinstance(event, StartEvent):
                            continue
                        yield event
                return
            logger.warning(
                "Cloud route chosen but no cloud handler is configured; serving locally",
                extra={"route": Route.CLOUD.value},
            )

        partial.model = prepared.model
        yield StartEvent(partial=partial, routing=prepared.routing)

        trace = create_perf_trace(prepared.model, self.backend.base_url)
        text = ""
        tool_calls: list[dict[str, Any]] = []
        final_frame: dict[str, Any] | None = None
        first_token_at_ms = 0.0
        text_started = False
        text_ended = False

        try:
            async with aclosing(self.backend.chat_stream(prepared.body)) as chunks, \
                    aclosing(parse_ndjson_stream(chunks, "ollama-stream")) as frames:
                async for frame in frames:
                    if not isinstance(frame, dict):
                        continue
                    message = frame.get("message") or {}
                    delta = message.get("content") or ""
                    if delta:
                        if not text_started:
                            first_token_at_ms = time.time() * 1000
                            text_started = True
                            partial.content = [TextContent(text="")]
                            yield TextStartEvent(content_index=0, partial=partial)
                        text += delta
                        partial.content[0].text = text
                        yield TextDeltaEvent(content_index=0, delta=delta, partial=partial)

                    # Tool calls arrive in intermediate frames, not the final one
                    if message.get("tool_calls"):
                        tool_calls.extend(message["tool_calls"])

                    if frame.get("done"):
                        final_frame = frame
                        break

            if text_started:
                text_ended = True
                yield TextEndEvent(content_index=0, content=text, partial=partial)

            if final_frame is None:
                raise RuntimeError("Backend stream ended without a final response")
        except Exception as e:
            logger.error("Chat stream failed: %s", e, extra={
                "model": prepared.model,
                "trace_id": trace.trace_id,
                "status_code": getattr(e, "status_code", None),
            })
            if text_started and not text_ended:
                yield TextEndEvent(content_index=0, content=text, partial=partial)
            partial.stop_reason = StopReason.ERROR
            partial.error_message = str(e)
            yield ErrorEvent(error_message=str(e), message=partial)
            return

        final = build_assistant_message(text, tool_calls, final_frame, prepared.model)
        finished = finalize_perf_trace(trace, final_frame, first_token_at_ms, prepared.num_ctx)
        log_perf_trace(finished)
        self._schedule_telemetry(finished, prepared.task_type)

        yield DoneEvent(reason=final.stop_reason, message=final, trace=finished)

    async def chat(
        self,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        options: ChatOptions | None = None,
    ) -> AssistantMessage:
        """Run a turn to completion and return the final message."""
        async with aclosing(self.stream_chat(messages, tools, system_prompt, options)) as events:
            async for event in events:
                if isinstance(event, (DoneEvent, ErrorEvent)):
                    return event.message
        raise RuntimeError("Stream finished without a terminal event")

    # ── Telemetry ────────────────────────────────────────────────────

    def _schedule_telemetry(self, trace: PerfTrace, task_type: TaskType) -> None:
        if not self.config.inference.enable_telemetry:
            return
        if self.analytics is self.metrics and not self.config.observability.metrics_enabled:
            return
        record = InferenceRecord(
            local_model=trace.model,
            prompt_tokens=trace.prompt_tokens,
            completion_tokens=trace.completion_tokens,
            duration_ms=trace.total_ms,
            tokens_per_second=trace.tokens_per_sec,
            task_type=task_type.value,
            trace_id=trace.trace_id,
        )
        task = asyncio.ensure_future(self._record(record))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _record(self, record: InferenceRecord) -> None:
        try:
            result = self.analytics(record)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # Analytics must never affect inference
            logger.debug("Failed to record inference %s: %s", record.trace_id, e)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def warm_up(self) -> float:
        """Wait for the backend and pre-load the configured model.

        Returns the load time in ms, 0 when warm-up is disabled, or -1 when
        the warm-up request failed.
        """
        if not self.config.warmup.warm_on_boot:
            return 0.0
        await self.backend.wait_until_ready()
        keep_alive = build_keep_alive_param(self.config.warmup) or "5m"
        return await self.backend.warm_model(self.config.inference.model, keep_alive)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "request_count": self._request_count,
            "model": self.config.inference.model,
            "tier": resolve_model_tier(self.config.inference.model).value,
        }

    async def close(self) -> None:
        """Drain pending telemetry and close backend connections."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.backend.close()
