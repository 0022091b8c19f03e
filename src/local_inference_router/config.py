"""Configuration model for the local-inference-router."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

import yaml

from .router.types import CloudFallbackMode, ComplexityTier, EstimatedCost


class ConfigurationError(ValueError):
    """Raised synchronously, before any I/O, when an operation is misconfigured."""


def require_model_tag(model: str | None, what: str = "model") -> str:
    """Return a stripped model tag, or raise if it is empty."""
    tag = (model or "").strip()
    if not tag:
        raise ConfigurationError(f"{what} tag must be a non-empty string")
    return tag


@dataclass
class BackendConfig:
    """Where the local inference backend lives and how long to wait for it."""

    base_url: str = "http://127.0.0.1:11434"
    api_key: str | None = None
    request_timeout: float = 120.0
    # Short on purpose: long enough to avoid flapping, short enough not to
    # stall request setup.
    model_list_timeout: float = 1.5


@dataclass
class ContextConfig:
    """Context window sizing."""

    max_context_tokens: int = 8192
    summary_trigger_tokens: int = 6144
    tool_schema_mode: str = "lazy"  # "lazy" or "full"


@dataclass
class InferenceConfig:
    """Per-request inference behavior."""

    model: str = "qwen3:8b"
    enable_optimizer: bool = True
    enable_telemetry: bool = True
    enable_model_selection: bool = True
    default_max_output_tokens: int = 4096
    think: bool = False  # Qwen3 / DeepSeek-R1 hidden reasoning


@dataclass
class WarmupConfig:
    """Model warm-up and keep-alive."""

    keep_alive: bool = True
    warm_on_boot: bool = True
    keep_alive_seconds: int = 300


@dataclass
class ModelTierConfig:
    """Fast/heavy model pair used when routing by complexity tier."""

    chat_model: str = ""
    heavy_model: str = ""
    auto_route: bool = False


@dataclass
class CloudRoutingConfig:
    """Local vs. cloud escalation policy."""

    mode: CloudFallbackMode = CloudFallbackMode.DISABLED
    provider: str | None = None
    model: str | None = None
    complexity_threshold: ComplexityTier = ComplexityTier.COMPLEX
    local_context_window_tokens: int = 8192
    confirm_callback: Callable[[EstimatedCost], Awaitable[bool]] | None = None


@dataclass
class ObservabilityConfig:
    """Configuration for observability."""

    log_level: str = "INFO"
    log_format: str = "json"
    metrics_enabled: bool = True


_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")
_ENV_PREFIX = "LIR_"


def _expand_env_vars(text: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` in a string."""
    def _replace(match: re.Match) -> str:
        expr = match.group(1)
        if ":-" in expr:
            var, default = expr.split(":-", 1)
            return os.environ.get(var, default)
        return os.environ.get(expr, match.group(0))
    return _ENV_VAR_RE.sub(_replace, text)


def _env_str(env: Mapping[str, str], key: str, default: str) -> str:
    raw = env.get(_ENV_PREFIX + key, "").strip()
    return raw or default


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(_ENV_PREFIX + key, "")
    try:
        value = int(raw, 10)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(_ENV_PREFIX + key, "")
    if raw == "":
        return default
    return raw == "1" or raw.lower() == "true"


def _env_enum(env: Mapping[str, str], key: str, allowed: list[str], default: str) -> str:
    raw = env.get(_ENV_PREFIX + key, "").lower()
    return raw if raw in allowed else default


def _yaml_enum(enum_cls, value, what: str):
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = ", ".join(repr(m.value) for m in enum_cls)
        raise ConfigurationError(f"{what} must be one of {allowed}, got {value!r}") from e


def read_context_config(environ: Mapping[str, str] | None = None) -> ContextConfig:
    """Context sizing settings from ``LIR_*`` environment variables."""
    env = os.environ if environ is None else environ
    return ContextConfig(
        max_context_tokens=_env_int(env, "MAX_CONTEXT_TOKENS", 8192),
        summary_trigger_tokens=_env_int(env, "SUMMARY_TRIGGER_TOKENS", 6144),
        tool_schema_mode=_env_enum(env, "TOOL_SCHEMA_MODE", ["lazy", "full"], "lazy"),
    )


@dataclass
class RouterConfig:
    """Top-level router configuration."""

    backend: BackendConfig = field(default_factory=BackendConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    warmup: WarmupConfig = field(default_factory=WarmupConfig)
    model_tiers: ModelTierConfig = field(default_factory=ModelTierConfig)
    cloud: CloudRoutingConfig = field(default_factory=CloudRoutingConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> RouterConfig:
        """Load configuration from a YAML file.

        Supports ``${VAR}`` and ``${VAR:-default}`` syntax in string values,
        resolved from environment variables at load time.
        """
        with open(path) as f:
            raw = f.read()
        raw = _expand_env_vars(raw)
        data = yaml.safe_load(raw) or {}
        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> RouterConfig:
        config = cls()

        be = data.get("backend", {})
        if be:
            config.backend.base_url = be.get("base_url", config.backend.base_url)
            config.backend.api_key = be.get("api_key")
            config.backend.request_timeout = be.get(
                "request_timeout", config.backend.request_timeout
            )
            config.backend.model_list_timeout = be.get(
                "model_list_timeout", config.backend.model_list_timeout
            )

        ctx = data.get("context", {})
        if ctx:
            config.context.max_context_tokens = ctx.get("max_context_tokens", 8192)
            config.context.summary_trigger_tokens = ctx.get(
                "summary_trigger_tokens", 6144
            )
            config.context.tool_schema_mode = ctx.get("tool_schema_mode", "lazy")

        inf = data.get("inference", {})
        if inf:
            config.inference.model = inf.get("model", config.inference.model)
            config.inference.enable_optimizer = inf.get("enable_optimizer", True)
            config.inference.enable_telemetry = inf.get("enable_telemetry", True)
            config.inference.enable_model_selection = inf.get(
                "enable_model_selection", True
            )
            config.inference.default_max_output_tokens = inf.get(
                "default_max_output_tokens", 4096
            )
            config.inference.think = inf.get("think", False)

        wu = data.get("warmup", {})
        if wu:
            config.warmup.keep_alive = wu.get("keep_alive", True)
            config.warmup.warm_on_boot = wu.get("warm_on_boot", True)
            config.warmup.keep_alive_seconds = wu.get("keep_alive_seconds", 300)

        mt = data.get("model_tiers", {})
        if mt:
            config.model_tiers.chat_model = mt.get("chat_model", "")
            config.model_tiers.heavy_model = mt.get("heavy_model", "")
            config.model_tiers.auto_route = mt.get("auto_route", False)

        cl = data.get("cloud", {})
        if cl:
            config.cloud.mode = _yaml_enum(
                CloudFallbackMode, cl.get("mode", "disabled"), "cloud.mode"
            )
            config.cloud.provider = cl.get("provider")
            config.cloud.model = cl.get("model")
            config.cloud.complexity_threshold = _yaml_enum(
                ComplexityTier,
                cl.get("complexity_threshold", "complex"),
                "cloud.complexity_threshold",
            )
            config.cloud.local_context_window_tokens = cl.get(
                "local_context_window_tokens", 8192
            )

        obs = data.get("observability", {})
        if obs:
            config.observability.log_level = obs.get("log_level", "INFO")
            config.observability.log_format = obs.get("log_format", "json")
            config.observability.metrics_enabled = obs.get("metrics_enabled", True)

        config.validate()
        return config

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RouterConfig:
        """Build configuration from ``LIR_*`` environment variables.

        Unparseable or out-of-range values fall back to their defaults.
        """
        env = os.environ if environ is None else environ
        config = cls()

        config.backend.base_url = _env_str(env, "BACKEND_URL", config.backend.base_url)
        config.backend.api_key = env.get(_ENV_PREFIX + "API_KEY") or None

        config.inference.model = _env_str(env, "DEFAULT_CHAT_MODEL", config.inference.model)
        config.inference.enable_optimizer = not _env_bool(env, "DISABLE_OPTIMIZER", False)
        config.inference.enable_telemetry = not _env_bool(env, "DISABLE_TELEMETRY", False)

        config.context = read_context_config(env)

        config.warmup.keep_alive = _env_bool(env, "MODEL_KEEPALIVE", True)
        config.warmup.warm_on_boot = _env_bool(env, "WARM_ON_BOOT", True)
        config.warmup.keep_alive_seconds = _env_int(env, "KEEPALIVE_SECONDS", 300)

        config.model_tiers.chat_model = _env_str(
            env, "DEFAULT_CHAT_MODEL", config.inference.model
        )
        config.model_tiers.heavy_model = _env_str(
            env, "HEAVY_MODEL", config.inference.model
        )
        config.model_tiers.auto_route = _env_bool(env, "AUTO_ROUTE", False)

        config.cloud.mode = CloudFallbackMode(_env_enum(
            env, "CLOUD_FALLBACK_MODE", [m.value for m in CloudFallbackMode], "disabled"
        ))
        config.cloud.provider = env.get(_ENV_PREFIX + "CLOUD_PROVIDER") or None
        config.cloud.model = env.get(_ENV_PREFIX + "CLOUD_MODEL") or None
        config.cloud.complexity_threshold = ComplexityTier(_env_enum(
            env, "COMPLEXITY_THRESHOLD", [t.value for t in ComplexityTier], "complex"
        ))
        config.cloud.local_context_window_tokens = _env_int(
            env, "LOCAL_CONTEXT_WINDOW", 8192
        )

        config.observability.log_level = _env_str(env, "LOG_LEVEL", "INFO")
        config.observability.log_format = _env_enum(
            env, "LOG_FORMAT", ["json", "text"], "json"
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Reject configurations no request could succeed with."""
        require_model_tag(self.inference.model, "inference.model")
        if self.context.max_context_tokens <= 0:
            raise ConfigurationError("context.max_context_tokens must be positive")
        if self.context.tool_schema_mode not in ("lazy", "full"):
            raise ConfigurationError(
                f"context.tool_schema_mode must be 'lazy' or 'full', "
                f"got {self.context.tool_schema_mode!r}"
            )

    @property
    def chat_model(self) -> str:
        """The fast-tier model, defaulting to the configured inference model."""
        return self.model_tiers.chat_model or self.inference.model

    @property
    def heavy_model(self) -> str:
        return self.model_tiers.heavy_model or self.inference.model
