"""Ollama native-API backend.

Talks to ``/api/ps`` (resident models), ``/api/chat`` (streaming NDJSON) and
``/api/generate`` (warm-up). Also translates generic chat messages and tool
definitions into the Ollama wire format and back.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from typing import TYPE_CHECKING, Any, AsyncIterator, Sequence

import httpx

from ..config import require_model_tag
from ..router.types import (
    AssistantMessage,
    StopReason,
    TextContent,
    ToolCallContent,
    Usage,
)
from .base import BackendError, InferenceBackend

if TYPE_CHECKING:
    from ..config import BackendConfig, WarmupConfig

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:11434"
WARMUP_TIMEOUT_SECONDS = 30.0
READY_CHECK_TIMEOUT_SECONDS = 2.0

_V1_SUFFIX_RE = re.compile(r"/v1$", re.IGNORECASE)


def resolve_base_url(base_url: str) -> str:
    """Normalize to the native API root (no trailing slash, no ``/v1``)."""
    trimmed = base_url.strip().rstrip("/")
    return _V1_SUFFIX_RE.sub("", trimmed) or DEFAULT_BASE_URL


def build_keep_alive_param(config: WarmupConfig) -> str | None:
    """``keep_alive`` value telling the backend how long to keep the model loaded."""
    if not config.keep_alive:
        return None
    return f"{config.keep_alive_seconds}s"


# ── Message conversion ───────────────────────────────────────────────

def extract_text_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "".join(
        part.get("text", "")
        for part in content
        if isinstance(part, dict) and part.get("type") == "text"
    )


def _extract_images(content: Any) -> list[str]:
    if not isinstance(content, list):
        return []
    return [
        part["data"]
        for part in content
        if isinstance(part, dict) and part.get("type") == "image" and "data" in part
    ]


def _extract_tool_calls(content: Any) -> list[dict[str, Any]]:
    if not isinstance(content, list):
        return []
    calls = []
    for part in content:
        if not isinstance(part, dict):
            continue
        if part.get("type") == "toolCall":
            calls.append({"function": {
                "name": part.get("name", ""), "arguments": part.get("arguments", {}),
            }})
        elif part.get("type") == "tool_use":
            calls.append({"function": {
                "name": part.get("name", ""), "arguments": part.get("input", {}),
            }})
    return calls


def convert_messages(
    messages: Sequence[dict[str, Any]],
    system_prompt: str | None = None,
) -> list[dict[str, Any]]:
    """Convert generic chat messages to Ollama ``/api/chat`` messages.

    Roles other than user/assistant/tool (and the ``toolResult`` alias) are
    dropped.
    """
    result: list[dict[str, Any]] = []
    if system_prompt:
        result.append({"role": "system", "content": system_prompt})

    for msg in messages:
        role = msg.get("role")
        content = msg.get("content")
        if role == "system":
            result.append({"role": "system", "content": extract_text_content(content)})
        elif role == "user":
            converted: dict[str, Any] = {
                "role": "user", "content": extract_text_content(content),
            }
            images = _extract_images(content)
            if images:
                converted["images"] = images
            result.append(converted)
        elif role == "assistant":
            converted = {"role": "assistant", "content": extract_text_content(content)}
            tool_calls = msg.get("tool_calls") or _extract_tool_calls(content)
            if tool_calls:
                converted["tool_calls"] = tool_calls
            result.append(converted)
        elif role in ("tool", "toolResult"):
            converted = {"role": "tool", "content": extract_text_content(content)}
            tool_name = msg.get("tool_name") or msg.get("toolName")
            if isinstance(tool_name, str) and tool_name:
                converted["tool_name"] = tool_name
            result.append(converted)
    return result


def convert_tools(tools: Sequence[dict[str, Any]] | None) -> list[dict[str, Any]]:
    """Convert tool definitions to Ollama function schemas.

    Accepts either flat ``{name, description, parameters}`` definitions or
    ones already wrapped as ``{"type": "function", "function": {...}}``.
    Nameless tools are skipped.
    """
    result = []
    for tool in tools or []:
        definition = tool.get("function", tool) if isinstance(tool, dict) else None
        if not isinstance(definition, dict):
            continue
        name = definition.get("name")
        if not isinstance(name, str) or not name:
            continue
        description = definition.get("description")
        result.append({
            "type": "function",
            "function": {
                "name": name,
                "description": description if isinstance(description, str) else "",
                "parameters": definition.get("parameters") or {},
            },
        })
    return result


def build_assistant_message(
    text: str,
    tool_calls: Sequence[dict[str, Any]],
    final_frame: dict[str, Any],
    model: str,
) -> AssistantMessage:
    """Assemble the final assistant message from accumulated stream state."""
    content: list[TextContent | ToolCallContent] = []
    if text:
        content.append(TextContent(text=text))
    for call in tool_calls:
        fn = call.get("function", {})
        content.append(ToolCallContent(
            id=f"ollama_call_{uuid.uuid4()}",
            name=fn.get("name", ""),
            arguments=fn.get("arguments") or {},
        ))

    return AssistantMessage(
        model=model,
        content=content,
        stop_reason=StopReason.TOOL_USE if tool_calls else StopReason.STOP,
        usage=Usage(
            input=final_frame.get("prompt_eval_count") or 0,
            output=final_frame.get("eval_count") or 0,
        ),
    )


# ── Backend ──────────────────────────────────────────────────────────

class OllamaBackend(InferenceBackend):
    """Backend speaking the Ollama native API."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
        api_key: str | None = None,
        model_list_timeout: float = 1.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            resolve_base_url(base_url), timeout=timeout, api_key=api_key,
            transport=transport,
        )
        self.model_list_timeout = model_list_timeout

    @classmethod
    def from_config(
        cls,
        config: BackendConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> OllamaBackend:
        return cls(
            base_url=config.base_url,
            timeout=config.request_timeout,
            api_key=config.api_key,
            model_list_timeout=config.model_list_timeout,
            transport=transport,
        )

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}/api/chat"

    async def list_loaded_models(self, timeout: float | None = None) -> list[dict[str, Any]]:
        client = await self.get_client()
        url = f"{self.base_url}/api/ps"
        try:
            resp = await client.get(
                url, timeout=timeout if timeout is not None else self.model_list_timeout,
            )
        except httpx.HTTPError as e:
            raise BackendError(f"Backend unreachable at {url}: {e}") from e
        if resp.status_code != 200:
            raise BackendError(
                f"Backend returned {resp.status_code} for {url}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise BackendError(f"Malformed model list from {url}") from e
        models = data.get("models") if isinstance(data, dict) else None
        return models if isinstance(models, list) else []

    async def chat_stream(self, request_body: dict[str, Any]) -> AsyncIterator[bytes]:
        client = await self.get_client()
        body = dict(request_body)
        body["stream"] = True
        try:
            async with client.stream(
                "POST", self.chat_url, json=body, headers=self._headers(),
            ) as resp:
                if resp.status_code < 200 or resp.status_code >= 300:
                    raw = await resp.aread()
                    error_text = raw.decode("utf-8", errors="replace") or "unknown error"
                    raise BackendError(
                        f"Backend API error {resp.status_code}: {error_text}",
                        status_code=resp.status_code,
                    )
                async for chunk in resp.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            logger.error("Error streaming from %s: %s", self.chat_url, e)
            raise BackendError(f"Backend request failed: {e}") from e

    async def generate(
        self, request_body: dict[str, Any], timeout: float | None = None
    ) -> dict[str, Any]:
        client = await self.get_client()
        url = f"{self.base_url}/api/generate"
        body = dict(request_body)
        body["stream"] = False
        try:
            resp = await client.post(
                url, json=body, headers=self._headers(),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.HTTPError as e:
            raise BackendError(f"Backend request failed: {e}") from e
        if resp.status_code != 200:
            raise BackendError(
                f"Backend API error {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise BackendError(f"Malformed generate response from {url}") from e

    async def warm_model(self, model: str, keep_alive: str = "5m") -> float:
        """Pre-load ``model`` with a one-token prompt.

        Returns the load time in ms, or -1 if the warm-up failed. Never raises
        for backend failures; raises ``ConfigurationError`` for an empty tag.
        """
        model = require_model_tag(model)
        started = time.monotonic()
        try:
            await self.generate(
                {
                    "model": model,
                    "prompt": "hi",
                    "keep_alive": keep_alive,
                    "options": {"num_predict": 1, "num_ctx": 512},
                },
                timeout=WARMUP_TIMEOUT_SECONDS,
            )
        except BackendError as e:
            logger.warning("Warm-up of %s failed: %s", model, e)
            return -1
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info("%s loaded in %.0fms", model, elapsed_ms, extra={"model": model})
        return elapsed_ms

    async def check_ready(self) -> bool:
        client = await self.get_client()
        try:
            resp = await client.get(
                f"{self.base_url}/api/version", timeout=READY_CHECK_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError:
            return False
        return resp.status_code == 200

    async def wait_until_ready(
        self, timeout: float = 4.0, poll_interval: float = 0.5
    ) -> bool:
        """Poll until the backend responds or ``timeout`` elapses.

        Returns whether the backend actually responded. A backend that has not
        answered yet may still be initializing, so callers proceed either way;
        the first real request surfaces a hard failure.
        """
        deadline = time.monotonic() + timeout
        while True:
            if await self.check_ready():
                return True
            if time.monotonic() >= deadline:
                logger.info(
                    "Backend at %s not yet responding; it may still be initializing",
                    self.base_url,
                )
                return False
            await asyncio.sleep(poll_interval)
