"""Tests for complexity scoring and local/cloud routing."""

import pytest

from local_inference_router.config import RouterConfig
from local_inference_router.router.complexity import (
    CLOUD_PRICING,
    ComplexityRouter,
    compare_complexity,
    create_estimated_cost,
    estimate_complexity,
    find_cloud_pricing,
    resolve_model_for_complexity,
    route_task,
    should_warn_about_cost,
)
from local_inference_router.router.types import (
    Attachment,
    CloudFallbackMode,
    ComplexityTier,
    EstimatedCost,
    Route,
    RoutingDecision,
    TaskContext,
    TaskType,
)


def _make_config(mode="auto", provider="openai", model="gpt-4o", **cloud) -> RouterConfig:
    config = RouterConfig()
    config.cloud.mode = CloudFallbackMode(mode)
    config.cloud.provider = provider
    config.cloud.model = model
    for key, value in cloud.items():
        setattr(config.cloud, key, value)
    return config


def _history(turns: int, chars: int = 10) -> list:
    return [{"role": "user", "content": "x" * chars} for _ in range(turns)]


# 3000 chars (+35) of agent work (+25): scores 60, complex
COMPLEX_AGENT = TaskContext(prompt="x" * 3000, task_type=TaskType.AGENT)


class TestEstimateComplexity:
    def test_greeting_is_simple(self):
        assert estimate_complexity(TaskContext("hello", TaskType.CHAT)) == ComplexityTier.SIMPLE

    def test_everything_at_once_is_very_complex(self):
        context = TaskContext(
            prompt="x" * 3000,
            task_type=TaskType.AGENT,
            conversation_history=_history(20),
            requires_long_context=True,
        )
        assert estimate_complexity(context) == ComplexityTier.VERY_COMPLEX

    @pytest.mark.parametrize("length,task_type,expected", [
        (199, TaskType.AGENT, ComplexityTier.SIMPLE),        # 25
        (200, TaskType.AGENT, ComplexityTier.MODERATE),      # 35
        (600, TaskType.CODE, ComplexityTier.MODERATE),       # 35
        (2001, TaskType.CODE, ComplexityTier.MODERATE),      # 50
        (2001, TaskType.AGENT, ComplexityTier.COMPLEX),      # 60
    ])
    def test_length_and_task_bands(self, length, task_type, expected):
        assert estimate_complexity(TaskContext("x" * length, task_type)) == expected

    def test_unknown_task_scores_ten(self):
        # 10 (unknown) + 20 (long context) = 30
        context = TaskContext("hi", TaskType.UNKNOWN, requires_long_context=True)
        assert estimate_complexity(context) == ComplexityTier.MODERATE

    def test_image_outweighs_file(self):
        # code 15 + image 15 = 30; code 15 + file 10 = 25
        with_image = TaskContext("hi", TaskType.CODE, attachments=[
            Attachment("file"), Attachment("image"),
        ])
        with_file = TaskContext("hi", TaskType.CODE, attachments=[Attachment("file")])
        assert estimate_complexity(with_image) == ComplexityTier.MODERATE
        assert estimate_complexity(with_file) == ComplexityTier.SIMPLE

    def test_history_bands(self):
        # code 15 + history: 5 turns +5 -> 20, 6 turns +10 -> 25, 16 turns +20 -> 35
        assert estimate_complexity(
            TaskContext("hi", TaskType.CODE, conversation_history=_history(5))
        ) == ComplexityTier.SIMPLE
        assert estimate_complexity(
            TaskContext("hi", TaskType.CODE, conversation_history=_history(6))
        ) == ComplexityTier.SIMPLE
        assert estimate_complexity(
            TaskContext("hi", TaskType.CODE, conversation_history=_history(16))
        ) == ComplexityTier.MODERATE

    def test_internet_need(self):
        context = TaskContext("hi", TaskType.AGENT, requires_internet_access=True)
        assert estimate_complexity(context) == ComplexityTier.MODERATE

    def test_compare_complexity(self):
        assert compare_complexity("simple", "complex") == -1
        assert compare_complexity(ComplexityTier.COMPLEX, "complex") == 0
        assert compare_complexity("very-complex", ComplexityTier.MODERATE) == 1


class TestCost:
    def test_pricing_table(self):
        assert len(CLOUD_PRICING) == 8
        assert find_cloud_pricing("openai", "gpt-4o-mini").output_price_per_1k_tokens == 0.0006
        assert find_cloud_pricing("openai", "gpt-5") is None
        assert find_cloud_pricing(None, "gpt-4o") is None

    def test_estimated_cost(self):
        pricing = find_cloud_pricing("openai", "gpt-4o-mini")
        cost = create_estimated_cost(pricing, 1000, 1000)
        assert cost.estimated_total_usd == pytest.approx(0.00075)
        assert cost.provider == "openai"
        assert cost.estimated_completion_tokens == 1000

    def test_warning_threshold(self):
        cheap = EstimatedCost(10, 10, 0.10, "openai", "gpt-4o")
        pricey = EstimatedCost(10, 10, 0.11, "openai", "gpt-4o")
        assert not should_warn_about_cost(cheap)
        assert should_warn_about_cost(pricey)


class TestRouteTask:
    @pytest.mark.asyncio
    async def test_disabled_always_local(self):
        config = _make_config(mode="disabled", local_context_window_tokens=10)
        decision = await route_task(COMPLEX_AGENT, config)
        assert decision.route == Route.LOCAL
        assert decision.reasoning == "Local: cloud fallback disabled, routing all tasks locally"
        assert decision.local_model == "qwen3:8b"
        assert decision.cloud_provider == "openai"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("length", [1, 500, 5000, 200000])
    @pytest.mark.parametrize("task_type", list(TaskType))
    async def test_disabled_local_for_any_input(self, length, task_type):
        config = _make_config(mode="disabled")
        decision = await route_task(TaskContext("x" * length, task_type), config)
        assert decision.route == Route.LOCAL

    @pytest.mark.asyncio
    async def test_below_threshold_stays_local(self):
        decision = await route_task(TaskContext("hello", TaskType.CHAT), _make_config())
        assert decision.route == Route.LOCAL
        assert decision.reasoning == (
            "Local: simple chat task is below cloud threshold complex (qwen3:8b)"
        )
        assert decision.estimated_cost is None

    @pytest.mark.asyncio
    async def test_auto_escalates_above_threshold(self):
        decision = await route_task(COMPLEX_AGENT, _make_config())
        assert decision.route == Route.CLOUD
        assert decision.complexity == ComplexityTier.COMPLEX
        assert decision.reasoning == (
            "Cloud: complex agent task exceeds threshold complex "
            "with auto cloud fallback enabled (qwen3:8b)"
        )
        assert decision.cloud_model == "gpt-4o"
        # 750 prompt tokens, 1024 completion tokens at gpt-4o prices
        assert decision.estimated_cost.prompt_tokens == 750
        assert decision.estimated_cost.estimated_completion_tokens == 1024
        assert decision.estimated_cost.estimated_total_usd == pytest.approx(0.012115)
        assert decision.warnings == ()

    @pytest.mark.asyncio
    async def test_auto_escalates_on_context_overflow(self):
        context = TaskContext(
            "hello", TaskType.CHAT, conversation_history=_history(1, chars=800),
        )
        config = _make_config(local_context_window_tokens=100)
        decision = await route_task(context, config)
        assert decision.route == Route.CLOUD
        assert decision.complexity == ComplexityTier.SIMPLE
        assert "exceeds local context window" in decision.reasoning
        assert decision.warnings == (
            "Prompt exceeds local context window (202 tokens estimated)",
        )

    @pytest.mark.asyncio
    async def test_missing_pricing_falls_back_local(self):
        config = _make_config(provider="acme", model="mystery")
        decision = await route_task(COMPLEX_AGENT, config)
        assert decision.route == Route.LOCAL
        assert decision.estimated_cost is None
        assert any("pricing is not configured" in w for w in decision.warnings)

    @pytest.mark.asyncio
    async def test_manual_without_callback(self):
        decision = await route_task(COMPLEX_AGENT, _make_config(mode="manual"))
        assert decision.route == Route.LOCAL
        assert decision.estimated_cost is not None
        assert decision.warnings == (
            "Cloud fallback requires confirmation but no confirmation callback was provided",
        )

    @pytest.mark.asyncio
    async def test_manual_approved(self):
        seen = []

        async def approve(cost):
            seen.append(cost)
            return True

        decision = await route_task(
            COMPLEX_AGENT, _make_config(mode="manual", confirm_callback=approve),
        )
        assert decision.route == Route.CLOUD
        assert "approved in manual mode" in decision.reasoning
        assert seen == [decision.estimated_cost]

    @pytest.mark.asyncio
    async def test_manual_declined(self):
        async def decline(cost):
            return False

        decision = await route_task(
            COMPLEX_AGENT, _make_config(mode="manual", confirm_callback=decline),
        )
        assert decision.route == Route.LOCAL
        assert "declined" in decision.reasoning
        assert "Cloud routing rejected by user confirmation callback" in decision.warnings

    @pytest.mark.asyncio
    async def test_callback_error_propagates(self):
        async def broken(cost):
            raise RuntimeError("dialog closed")

        with pytest.raises(RuntimeError):
            await route_task(COMPLEX_AGENT, _make_config(mode="manual", confirm_callback=broken))


class TestTierModels:
    def _config(self, auto_route=True, heavy="qwen3:32b") -> RouterConfig:
        config = RouterConfig()
        config.model_tiers.chat_model = "qwen3:4b"
        config.model_tiers.heavy_model = heavy
        config.model_tiers.auto_route = auto_route
        return config

    def test_complex_goes_heavy(self):
        result = resolve_model_for_complexity("complex", self._config())
        assert (result.model, result.tier) == ("qwen3:32b", "heavy")
        assert resolve_model_for_complexity("very-complex", self._config()).tier == "heavy"

    def test_moderate_stays_fast(self):
        result = resolve_model_for_complexity(ComplexityTier.MODERATE, self._config())
        assert (result.model, result.tier) == ("qwen3:4b", "fast")

    def test_auto_route_off(self):
        result = resolve_model_for_complexity("very-complex", self._config(auto_route=False))
        assert result.tier == "fast"
        assert result.reason == "auto-routing disabled or same model for both tiers"

    def test_same_model_both_tiers(self):
        result = resolve_model_for_complexity("complex", self._config(heavy="qwen3:4b"))
        assert result.tier == "fast"


class TestComplexityRouter:
    @pytest.mark.asyncio
    async def test_unconfigured_defaults_local(self, monkeypatch):
        monkeypatch.delenv("LIR_DEFAULT_CHAT_MODEL", raising=False)
        decision = await ComplexityRouter().route_message("x" * 5000)
        assert decision.route == Route.LOCAL
        assert decision.complexity == ComplexityTier.SIMPLE
        assert decision.local_model == "qwen3:8b"
        assert decision.reasoning == "Router not initialized, defaulting to local"

    @pytest.mark.asyncio
    async def test_unconfigured_uses_env_model(self, monkeypatch):
        monkeypatch.setenv("LIR_DEFAULT_CHAT_MODEL", "phi3:mini")
        decision = await ComplexityRouter().route_message("hi")
        assert decision.local_model == "phi3:mini"

    @pytest.mark.asyncio
    async def test_route_message_derives_context(self):
        router = ComplexityRouter(_make_config())
        decision = await router.route_message(
            "automate the deploy " + "x" * 3000,
        )
        assert decision.route == Route.CLOUD
        assert router.status["decisions"] == 1
        assert router.status["cloud_decisions"] == 1

    @pytest.mark.asyncio
    async def test_configure_and_reset(self):
        router = ComplexityRouter()
        assert router.status == {"configured": False}
        router.configure(_make_config(mode="manual"))
        status = router.status
        assert status["configured"] is True
        assert status["cloud_mode"] == "manual"
        assert status["complexity_threshold"] == "complex"
        router.reset()
        assert router.status == {"configured": False}

    def _decision(self, route: Route) -> RoutingDecision:
        return RoutingDecision(
            route=route,
            complexity=ComplexityTier.SIMPLE,
            local_model="qwen3:8b",
            reasoning="",
            estimated_cost=EstimatedCost(10, 2048, 0.003, "openai", "gpt-4o"),
        )

    def test_manual_cloud_decision_needs_confirmation(self):
        router = ComplexityRouter(_make_config(mode="manual"))
        assert router.needs_cloud_confirmation(self._decision(Route.CLOUD)) is True

    def test_local_decision_needs_no_confirmation(self):
        router = ComplexityRouter(_make_config(mode="manual"))
        assert router.needs_cloud_confirmation(self._decision(Route.LOCAL)) is False

    def test_auto_mode_needs_no_confirmation(self):
        router = ComplexityRouter(_make_config(mode="auto"))
        assert router.needs_cloud_confirmation(self._decision(Route.CLOUD)) is False

    def test_unconfigured_needs_no_confirmation(self):
        assert ComplexityRouter().needs_cloud_confirmation(self._decision(Route.CLOUD)) is False
