"""Core type definitions for the routing and inference system."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar


class TaskType(str, Enum):
    """Coarse task category inferred from a conversational turn."""

    CHAT = "chat"
    CODE = "code"
    AGENT = "agent"
    TOOL = "tool"
    UNKNOWN = "unknown"


class TaskWeight(str, Enum):
    """Model sizing hint, distinct from ComplexityTier which drives local/cloud routing."""

    QUICK = "quick"
    STANDARD = "standard"
    HEAVY = "heavy"


class ComplexityTier(str, Enum):
    """Request complexity tiers, totally ordered simple < ... < very-complex."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    VERY_COMPLEX = "very-complex"


class Route(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"


class CloudFallbackMode(str, Enum):
    """How the router is allowed to escalate to a cloud model."""

    DISABLED = "disabled"
    MANUAL = "manual"
    AUTO = "auto"


class ModelTier(str, Enum):
    """Capability tier of a local model, derived from its parameter size."""

    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class StopReason(str, Enum):
    STOP = "stop"
    TOOL_USE = "tool_use"
    ERROR = "error"


# ── Routing ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Attachment:
    """Descriptor for something attached to a turn (no payload)."""

    type: str  # "file", "image" or "url"
    size_kb: float | None = None


@dataclass(frozen=True)
class TaskContext:
    """Everything the complexity router knows about one incoming turn."""

    prompt: str
    task_type: TaskType = TaskType.UNKNOWN
    conversation_history: tuple[dict[str, str], ...] = ()
    attachments: tuple[Attachment, ...] = ()
    requires_internet_access: bool = False
    requires_long_context: bool = False
    max_token_budget: int | None = None

    def __post_init__(self) -> None:
        # Accept lists from callers but store immutable tuples
        object.__setattr__(self, "task_type", TaskType(self.task_type))
        object.__setattr__(
            self, "conversation_history", tuple(self.conversation_history or ())
        )
        object.__setattr__(self, "attachments", tuple(self.attachments or ()))


@dataclass(frozen=True)
class CloudPricing:
    provider: str
    model: str
    input_price_per_1k_tokens: float
    output_price_per_1k_tokens: float


@dataclass(frozen=True)
class EstimatedCost:
    prompt_tokens: int
    estimated_completion_tokens: int
    estimated_total_usd: float
    provider: str
    model: str


@dataclass(frozen=True)
class RoutingDecision:
    """The final local/cloud decision for a turn. Never mutated after creation."""

    route: Route
    complexity: ComplexityTier
    local_model: str
    reasoning: str
    cloud_provider: str | None = None
    cloud_model: str | None = None
    estimated_cost: EstimatedCost | None = None
    warnings: tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)


# ── Model selection ──────────────────────────────────────────────────

@dataclass(frozen=True)
class LoadedModel:
    """A model currently resident in the backend's memory."""

    name: str
    size_bytes: int
    size_vram: int
    family: str
    parameter_size: str
    parameter_count: float  # billions, 0 when unknown


@dataclass(frozen=True)
class ModelSelection:
    model: str
    reason: str
    task_weight: TaskWeight
    all_available: tuple[str, ...] = ()


# ── Assistant output ─────────────────────────────────────────────────

@dataclass
class Usage:
    input: int = 0
    output: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input + self.output


@dataclass
class TextContent:
    text: str
    type: ClassVar[str] = "text"


@dataclass
class ToolCallContent:
    id: str
    name: str
    arguments: dict[str, Any]
    type: ClassVar[str] = "tool_call"


@dataclass
class AssistantMessage:
    """A (possibly partial) assistant message assembled from the stream."""

    model: str
    content: list[TextContent | ToolCallContent] = field(default_factory=list)
    stop_reason: StopReason = StopReason.STOP
    usage: Usage = field(default_factory=Usage)
    provider: str = "ollama"
    error_message: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextContent))

    @property
    def tool_calls(self) -> list[ToolCallContent]:
        return [p for p in self.content if isinstance(p, ToolCallContent)]


# ── Stream events ────────────────────────────────────────────────────

@dataclass
class StartEvent:
    partial: AssistantMessage
    routing: RoutingDecision | None = None
    type: ClassVar[str] = "start"


@dataclass
class TextStartEvent:
    content_index: int
    partial: AssistantMessage
    type: ClassVar[str] = "text_start"


@dataclass
class TextDeltaEvent:
    content_index: int
    delta: str
    partial: AssistantMessage
    type: ClassVar[str] = "text_delta"


@dataclass
class TextEndEvent:
    content_index: int
    content: str
    partial: AssistantMessage
    type: ClassVar[str] = "text_end"


@dataclass
class DoneEvent:
    reason: StopReason
    message: AssistantMessage
    trace: Any = None  # PerfTrace; typed loosely to avoid an import cycle
    type: ClassVar[str] = "done"


@dataclass
class ErrorEvent:
    error_message: str
    message: AssistantMessage
    type: ClassVar[str] = "error"


StreamEvent = (
    StartEvent | TextStartEvent | TextDeltaEvent | TextEndEvent | DoneEvent | ErrorEvent
)
