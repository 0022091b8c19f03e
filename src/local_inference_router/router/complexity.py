"""Complexity router: decides whether a turn runs locally or escalates to cloud.

Complexity is an additive score over cheap prompt features (length, task
type, history, attachments, internet and long-context needs), bucketed into
four ordered tiers. Cloud escalation is opt-in and, in manual mode, gated on
an injected async confirmation callback that sees the estimated cost.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

from ..pipeline.context import estimate_tokens
from .signals import build_task_context
from .types import (
    Attachment,
    CloudFallbackMode,
    CloudPricing,
    ComplexityTier,
    EstimatedCost,
    Route,
    RoutingDecision,
    TaskContext,
    TaskType,
)

if TYPE_CHECKING:
    from ..config import RouterConfig

logger = logging.getLogger(__name__)

COMPLEXITY_ORDER = (
    ComplexityTier.SIMPLE,
    ComplexityTier.MODERATE,
    ComplexityTier.COMPLEX,
    ComplexityTier.VERY_COMPLEX,
)

COMPLETION_TOKENS_BY_COMPLEXITY = {
    ComplexityTier.SIMPLE: 256,
    ComplexityTier.MODERATE: 512,
    ComplexityTier.COMPLEX: 1024,
    ComplexityTier.VERY_COMPLEX: 2048,
}

# Prices in USD per 1k tokens
CLOUD_PRICING: tuple[CloudPricing, ...] = (
    CloudPricing("openai", "gpt-4o", 0.0025, 0.01),
    CloudPricing("openai", "gpt-4o-mini", 0.00015, 0.0006),
    CloudPricing("openai", "o3-mini", 0.0011, 0.0044),
    CloudPricing("anthropic", "claude-sonnet-4-5", 0.003, 0.015),
    CloudPricing("anthropic", "claude-haiku-3-5", 0.0008, 0.004),
    CloudPricing("google", "gemini-2.0-flash", 0.0001, 0.0004),
    CloudPricing("google", "gemini-1.5-pro", 0.00125, 0.005),
    CloudPricing("groq", "llama-3.3-70b", 0.00059, 0.00079),
)

COST_WARNING_THRESHOLD_USD = 0.10

_TASK_TYPE_SCORES = {
    TaskType.CHAT: 0,
    TaskType.TOOL: 5,
    TaskType.CODE: 15,
    TaskType.UNKNOWN: 10,
    TaskType.AGENT: 25,
}


def compare_complexity(a: ComplexityTier | str, b: ComplexityTier | str) -> int:
    """Return -1, 0 or 1 as ``a`` is below, equal to or above ``b``."""
    ai = COMPLEXITY_ORDER.index(ComplexityTier(a))
    bi = COMPLEXITY_ORDER.index(ComplexityTier(b))
    return (ai > bi) - (ai < bi)


def estimate_complexity(context: TaskContext) -> ComplexityTier:
    """Score a turn and bucket it into a complexity tier.

    Scoring bands:
      prompt length   <200: 0, 200-500: 10, 501-2000: 20, >2000: 35
      task type       chat 0, tool 5, code 15, unknown 10, agent 25
      history turns   0: 0, 1-5: 5, 6-15: 10, >15: 20
      attachments     any image 15, else any file/url 10
      internet need   +10
      long context    +20

    The clamped score maps to tiers at <=25, <=50, <=75 and above.
    """
    score = 0

    prompt_length = len(context.prompt)
    if 200 <= prompt_length <= 500:
        score += 10
    elif 500 < prompt_length <= 2000:
        score += 20
    elif prompt_length > 2000:
        score += 35

    score += _TASK_TYPE_SCORES.get(context.task_type, 10)

    turns = len(context.conversation_history)
    if 1 <= turns <= 5:
        score += 5
    elif 6 <= turns <= 15:
        score += 10
    elif turns > 15:
        score += 20

    attachment_types = {a.type for a in context.attachments}
    if "image" in attachment_types:
        score += 15
    elif attachment_types & {"file", "url"}:
        score += 10

    if context.requires_internet_access:
        score += 10
    if context.requires_long_context:
        score += 20

    score = min(score, 100)
    if score <= 25:
        return ComplexityTier.SIMPLE
    if score <= 50:
        return ComplexityTier.MODERATE
    if score <= 75:
        return ComplexityTier.COMPLEX
    return ComplexityTier.VERY_COMPLEX


def find_cloud_pricing(
    provider: str | None,
    model: str | None,
    pricing: Sequence[CloudPricing] = CLOUD_PRICING,
) -> CloudPricing | None:
    if not provider or not model:
        return None
    return next(
        (p for p in pricing if p.provider == provider and p.model == model),
        None,
    )


def create_estimated_cost(
    pricing: CloudPricing, prompt_tokens: int, completion_tokens: int
) -> EstimatedCost:
    total = (
        prompt_tokens / 1000 * pricing.input_price_per_1k_tokens
        + completion_tokens / 1000 * pricing.output_price_per_1k_tokens
    )
    return EstimatedCost(
        prompt_tokens=prompt_tokens,
        estimated_completion_tokens=completion_tokens,
        estimated_total_usd=total,
        provider=pricing.provider,
        model=pricing.model,
    )


def should_warn_about_cost(cost: EstimatedCost) -> bool:
    return cost.estimated_total_usd > COST_WARNING_THRESHOLD_USD


def _reasoning(
    route: Route,
    complexity: ComplexityTier,
    task_type: TaskType,
    local_model: str,
    detail: str,
) -> str:
    prefix = "Local" if route == Route.LOCAL else "Cloud"
    return f"{prefix}: {complexity.value} {task_type.value} task {detail} ({local_model})"


async def route_task(
    context: TaskContext,
    config: RouterConfig,
    pricing: Sequence[CloudPricing] = CLOUD_PRICING,
) -> RoutingDecision:
    """Decide local vs. cloud for one turn.

    Never raises for a missing cloud setup; those cases fall back to local
    with a warning on the decision. Exceptions from the confirmation
    callback propagate to the caller.
    """
    cloud = config.cloud
    local_model = config.inference.model
    complexity = estimate_complexity(context)

    prompt_tokens = estimate_tokens(context.prompt)
    history_tokens = sum(
        estimate_tokens(str(m.get("content", "")))
        for m in context.conversation_history
    )
    total_tokens = prompt_tokens + history_tokens
    completion_tokens = COMPLETION_TOKENS_BY_COMPLEXITY[complexity]
    overflow = total_tokens > cloud.local_context_window_tokens

    warnings: list[str] = []
    if overflow:
        warnings.append(
            f"Prompt exceeds local context window ({total_tokens} tokens estimated)"
        )

    threshold = ComplexityTier(cloud.complexity_threshold)
    exceeds = compare_complexity(complexity, threshold) >= 0

    def decide(route: Route, reasoning: str, cost: EstimatedCost | None = None) -> RoutingDecision:
        return RoutingDecision(
            route=route,
            complexity=complexity,
            local_model=local_model,
            reasoning=reasoning,
            cloud_provider=cloud.provider,
            cloud_model=cloud.model,
            estimated_cost=cost,
            warnings=tuple(warnings),
        )

    def local(detail: str, cost: EstimatedCost | None = None) -> RoutingDecision:
        return decide(
            Route.LOCAL,
            _reasoning(Route.LOCAL, complexity, context.task_type, local_model, detail),
            cost,
        )

    def escalate(detail: str, cost: EstimatedCost) -> RoutingDecision:
        return decide(
            Route.CLOUD,
            _reasoning(Route.CLOUD, complexity, context.task_type, local_model, detail),
            cost,
        )

    mode = CloudFallbackMode(cloud.mode)
    if mode == CloudFallbackMode.DISABLED:
        return decide(
            Route.LOCAL, "Local: cloud fallback disabled, routing all tasks locally"
        )

    if not (overflow or exceeds):
        return local(f"is below cloud threshold {threshold.value}")

    price = find_cloud_pricing(cloud.provider, cloud.model, pricing)
    if price is None:
        warnings.append(
            "Cloud fallback requested but cloud provider/model pricing is not configured"
        )
        return local("has no cloud pricing configured")

    cost = create_estimated_cost(price, total_tokens, completion_tokens)

    if mode == CloudFallbackMode.MANUAL:
        if cloud.confirm_callback is None:
            warnings.append(
                "Cloud fallback requires confirmation but no confirmation callback was provided"
            )
            return local("requires manual confirmation and none was available", cost)

        if not await cloud.confirm_callback(cost):
            warnings.append("Cloud routing rejected by user confirmation callback")
            return local("was declined after cloud cost confirmation", cost)

        return escalate(
            f"exceeds threshold {threshold.value} and was approved in manual mode", cost
        )

    if overflow:
        return escalate(
            "exceeds local context window and auto cloud fallback is enabled", cost
        )
    return escalate(
        f"exceeds threshold {threshold.value} with auto cloud fallback enabled", cost
    )


# ── Fast/heavy tier routing ──────────────────────────────────────────

@dataclass(frozen=True)
class TierModel:
    model: str
    tier: str  # "fast" or "heavy"
    reason: str


def resolve_model_for_complexity(
    complexity: ComplexityTier | str, config: RouterConfig
) -> TierModel:
    """Map a complexity tier to the configured fast or heavy local model.

    complex and very-complex go to the heavy model when auto-routing is on
    and the two tiers name different models; everything else stays fast.
    """
    complexity = ComplexityTier(complexity)
    chat_model, heavy_model = config.chat_model, config.heavy_model

    if not config.model_tiers.auto_route or chat_model == heavy_model:
        return TierModel(
            chat_model, "fast", "auto-routing disabled or same model for both tiers"
        )
    if compare_complexity(complexity, ComplexityTier.COMPLEX) >= 0:
        return TierModel(
            heavy_model, "heavy", f"{complexity.value} task routed to heavy model"
        )
    return TierModel(
        chat_model, "fast", f"{complexity.value} task routed to fast model"
    )


# ── Router facade ────────────────────────────────────────────────────

class ComplexityRouter:
    """Routes raw messages, deriving the task context from the text.

    Safe to use before configuration: an unconfigured router always answers
    with a local decision.
    """

    def __init__(self, config: RouterConfig | None = None):
        self.config = config
        self._decisions = 0
        self._cloud_decisions = 0

    def configure(self, config: RouterConfig) -> None:
        self.config = config
        logger.info(
            "Complexity router configured: mode=%s threshold=%s",
            config.cloud.mode.value, config.cloud.complexity_threshold.value,
        )

    def reset(self) -> None:
        self.config = None

    async def route_message(
        self,
        prompt: str,
        conversation_history: Sequence[dict[str, str]] | None = None,
        tools: Sequence[Any] | None = None,
        attachments: Sequence[Attachment] | None = None,
    ) -> RoutingDecision:
        if self.config is None:
            return RoutingDecision(
                route=Route.LOCAL,
                complexity=ComplexityTier.SIMPLE,
                local_model=os.environ.get("LIR_DEFAULT_CHAT_MODEL") or "qwen3:8b",
                reasoning="Router not initialized, defaulting to local",
            )

        context = build_task_context(prompt, conversation_history, tools, attachments)
        decision = await route_task(context, self.config)

        self._decisions += 1
        if decision.route == Route.CLOUD:
            self._cloud_decisions += 1
        logger.debug(
            "Routed %s turn to %s: %s",
            context.task_type.value, decision.route.value, decision.reasoning,
            extra={
                "route": decision.route.value,
                "task_type": context.task_type.value,
                "tier": decision.complexity.value,
            },
        )
        return decision

    def needs_cloud_confirmation(self, decision: RoutingDecision) -> bool:
        """Whether a UI should ask before acting on ``decision``."""
        return (
            self.config is not None
            and decision.route == Route.CLOUD
            and self.config.cloud.mode == CloudFallbackMode.MANUAL
        )

    @property
    def status(self) -> dict[str, Any]:
        if self.config is None:
            return {"configured": False}
        cloud = self.config.cloud
        return {
            "configured": True,
            "local_model": self.config.inference.model,
            "cloud_mode": cloud.mode.value,
            "cloud_provider": cloud.provider,
            "cloud_model": cloud.model,
            "complexity_threshold": cloud.complexity_threshold.value,
            "decisions": self._decisions,
            "cloud_decisions": self._cloud_decisions,
        }
