"""Tests for configuration loading."""

import pytest
import yaml

from local_inference_router.config import (
    ConfigurationError,
    RouterConfig,
    read_context_config,
    require_model_tag,
)
from local_inference_router.router.types import CloudFallbackMode, ComplexityTier


class TestConfigLoading:
    def test_load_from_yaml(self, tmp_path):
        config_data = {
            "backend": {"base_url": "http://gpu-box:11434", "request_timeout": 60},
            "context": {"max_context_tokens": 16384, "tool_schema_mode": "full"},
            "inference": {"model": "llama3.1:8b", "enable_optimizer": False},
            "warmup": {"keep_alive_seconds": 600},
            "cloud": {
                "mode": "manual",
                "provider": "openai",
                "model": "gpt-4o-mini",
                "complexity_threshold": "moderate",
            },
        }
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump(config_data))

        config = RouterConfig.from_yaml(str(config_path))
        assert config.backend.base_url == "http://gpu-box:11434"
        assert config.backend.request_timeout == 60
        assert config.context.max_context_tokens == 16384
        assert config.context.tool_schema_mode == "full"
        assert config.inference.model == "llama3.1:8b"
        assert config.inference.enable_optimizer is False
        assert config.warmup.keep_alive_seconds == 600
        assert config.cloud.mode == CloudFallbackMode.MANUAL
        assert config.cloud.provider == "openai"
        assert config.cloud.complexity_threshold == ComplexityTier.MODERATE

    def test_default_values(self):
        config = RouterConfig()
        assert config.backend.base_url == "http://127.0.0.1:11434"
        assert config.backend.model_list_timeout == 1.5
        assert config.context.max_context_tokens == 8192
        assert config.context.summary_trigger_tokens == 6144
        assert config.context.tool_schema_mode == "lazy"
        assert config.inference.model == "qwen3:8b"
        assert config.inference.think is False
        assert config.warmup.keep_alive_seconds == 300
        assert config.cloud.mode == CloudFallbackMode.DISABLED
        assert config.cloud.complexity_threshold == ComplexityTier.COMPLEX
        assert config.cloud.local_context_window_tokens == 8192

    def test_env_var_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_LIR_MODEL", "mistral:7b")
        config_path = tmp_path / "config.yaml"
        config_path.write_text(
            "inference:\n"
            "  model: ${TEST_LIR_MODEL}\n"
            "backend:\n"
            "  base_url: ${TEST_LIR_UNSET_URL:-http://fallback:11434}\n"
        )
        config = RouterConfig.from_yaml(str(config_path))
        assert config.inference.model == "mistral:7b"
        assert config.backend.base_url == "http://fallback:11434"

    def test_missing_config_file(self):
        with pytest.raises(FileNotFoundError):
            RouterConfig.from_yaml("/nonexistent/path.yaml")

    def test_empty_model_in_yaml_rejected(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({"inference": {"model": "   "}}))
        with pytest.raises(ConfigurationError):
            RouterConfig.from_yaml(str(config_path))

    def test_invalid_tool_schema_mode_rejected(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({"context": {"tool_schema_mode": "eager"}}))
        with pytest.raises(ConfigurationError):
            RouterConfig.from_yaml(str(config_path))

    @pytest.mark.parametrize("cloud", [
        {"mode": "sometimes"},
        {"mode": "auto", "complexity_threshold": "hard"},
    ])
    def test_invalid_cloud_enum_rejected(self, tmp_path, cloud):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({"cloud": cloud}))
        with pytest.raises(ConfigurationError, match="must be one of"):
            RouterConfig.from_yaml(str(config_path))


class TestEnvConfig:
    def test_defaults_from_empty_env(self):
        config = RouterConfig.from_env({})
        assert config.inference.model == "qwen3:8b"
        assert config.inference.enable_optimizer is True
        assert config.context.max_context_tokens == 8192

    def test_env_overrides(self):
        config = RouterConfig.from_env({
            "LIR_BACKEND_URL": "http://remote:11434",
            "LIR_DEFAULT_CHAT_MODEL": "phi3:mini",
            "LIR_DISABLE_OPTIMIZER": "true",
            "LIR_MAX_CONTEXT_TOKENS": "4096",
            "LIR_TOOL_SCHEMA_MODE": "full",
            "LIR_CLOUD_FALLBACK_MODE": "auto",
            "LIR_COMPLEXITY_THRESHOLD": "very-complex",
            "LIR_MODEL_KEEPALIVE": "0",
        })
        assert config.backend.base_url == "http://remote:11434"
        assert config.inference.model == "phi3:mini"
        assert config.inference.enable_optimizer is False
        assert config.context.max_context_tokens == 4096
        assert config.context.tool_schema_mode == "full"
        assert config.cloud.mode == CloudFallbackMode.AUTO
        assert config.cloud.complexity_threshold == ComplexityTier.VERY_COMPLEX
        assert config.warmup.keep_alive is False

    def test_invalid_values_fall_back_to_defaults(self):
        config = RouterConfig.from_env({
            "LIR_MAX_CONTEXT_TOKENS": "lots",
            "LIR_SUMMARY_TRIGGER_TOKENS": "-5",
            "LIR_TOOL_SCHEMA_MODE": "sometimes",
            "LIR_CLOUD_FALLBACK_MODE": "always",
        })
        assert config.context.max_context_tokens == 8192
        assert config.context.summary_trigger_tokens == 6144
        assert config.context.tool_schema_mode == "lazy"
        assert config.cloud.mode == CloudFallbackMode.DISABLED

    def test_model_tiers_default_to_chat_model(self):
        config = RouterConfig.from_env({"LIR_DEFAULT_CHAT_MODEL": "qwen3:4b"})
        assert config.chat_model == "qwen3:4b"
        assert config.heavy_model == "qwen3:4b"
        assert config.model_tiers.auto_route is False


class TestRequireModelTag:
    def test_strips_whitespace(self):
        assert require_model_tag("  qwen3:8b ") == "qwen3:8b"

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_empty_rejected(self, value):
        with pytest.raises(ConfigurationError):
            require_model_tag(value)

    def test_configuration_error_is_value_error(self):
        assert issubclass(ConfigurationError, ValueError)


class TestReadContextConfig:
    def test_defaults(self):
        context = read_context_config({})
        assert context.max_context_tokens == 8192
        assert context.summary_trigger_tokens == 6144
        assert context.tool_schema_mode == "lazy"

    def test_overrides(self):
        context = read_context_config({
            "LIR_MAX_CONTEXT_TOKENS": "32768",
            "LIR_SUMMARY_TRIGGER_TOKENS": "24000",
            "LIR_TOOL_SCHEMA_MODE": "FULL",
        })
        assert context.max_context_tokens == 32768
        assert context.summary_trigger_tokens == 24000
        assert context.tool_schema_mode == "full"
