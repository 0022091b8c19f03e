"""Tests for inference analytics and structured logging."""

import io
import json
import logging
import sys

import pytest

from local_inference_router.observability.logging import (
    JSONFormatter,
    KeyValueFormatter,
    setup_logging,
)
from local_inference_router.observability.metrics import (
    InferenceRecord,
    MetricsCollector,
    format_savings,
)


def _record(model="qwen3:8b", prompt=1000, completion=500, duration=100.0, tps=20.0, task="chat"):
    return InferenceRecord(
        local_model=model,
        prompt_tokens=prompt,
        completion_tokens=completion,
        duration_ms=duration,
        tokens_per_second=tps,
        task_type=task,
    )


class TestMetricsCollector:
    def test_empty_summary(self):
        summary = MetricsCollector().get_summary()
        assert summary["total_inferences"] == 0
        assert "latency" not in summary

    def test_summary_aggregates(self):
        collector = MetricsCollector()
        collector.record_inference(_record(duration=100.0, tps=20.0))
        collector(_record(model="qwen3:1.7b", prompt=500, duration=300.0, tps=40.0, task="code"))

        summary = collector.get_summary()
        assert summary["total_inferences"] == 2
        assert summary["latency"]["mean_ms"] == 200.0
        assert summary["latency"]["min_ms"] == 100.0
        assert summary["latency"]["max_ms"] == 300.0
        assert summary["tokens"] == {
            "total_prompt": 1500, "total_completion": 1000, "total": 2500,
        }
        assert summary["avg_tokens_per_second"] == 30.0
        assert summary["task_distribution"] == {"chat": 1, "code": 1}
        assert summary["model_distribution"] == {"qwen3:8b": 1, "qwen3:1.7b": 1}

    def test_savings_against_reference_model(self):
        collector = MetricsCollector()
        collector.record_inference(_record(prompt=1500, completion=1000))
        savings = collector.get_summary()["savings"]
        # gpt-4o: 1.5k * 0.0025 + 1k * 0.01
        assert savings["compared_to"] == "openai gpt-4o"
        assert savings["usd"] == pytest.approx(0.01375)
        assert savings["formatted"] == "$0.01"

    def test_cloud_equivalents_sorted(self):
        collector = MetricsCollector()
        collector.record_inference(_record())
        costs = [c["estimated_cost_usd"] for c in collector.cloud_equivalents()]
        assert len(costs) == 8
        assert costs == sorted(costs, reverse=True)

    def test_clear(self):
        collector = MetricsCollector()
        collector.record_inference(_record())
        collector.clear()
        assert collector.get_summary()["total_inferences"] == 0


class TestFormatSavings:
    @pytest.mark.parametrize("usd,expected", [
        (0, "$0.00"),
        (0.004, "$0.00"),
        (12.345, "$12.35"),
        (1234.5, "$1,234.50"),
        (-2.5, "-$2.50"),
    ])
    def test_format(self, usd, expected):
        assert format_savings(usd) == expected


class TestJSONFormatter:
    def test_includes_extra_fields(self):
        record = logging.LogRecord(
            "local_inference_router.orchestrator", logging.INFO, __file__, 1,
            "Routed %s turn", ("code",), None,
        )
        record.trace_id = "abcd1234"
        record.route = "local"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Routed code turn"
        assert entry["level"] == "INFO"
        assert entry["trace_id"] == "abcd1234"
        assert entry["route"] == "local"
        assert "model" not in entry

    def test_exception_serialized(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]

    def test_setup_logging(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging("debug", "json")
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert logging.getLogger("httpx").level == logging.WARNING
            assert root.handlers[0].stream is sys.stderr
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    def test_setup_text_logging_to_stream(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        buffer = io.StringIO()
        try:
            setup_logging("info", "text", stream=buffer)
            assert isinstance(root.handlers[0].formatter, KeyValueFormatter)
            logging.getLogger("local_inference_router.test").info(
                "served", extra={"model": "qwen3:8b", "num_ctx": 4096},
            )
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
        line = buffer.getvalue().strip()
        assert "[INFO] local_inference_router.test: served model=qwen3:8b num_ctx=4096" in line


class TestKeyValueFormatter:
    def _record(self, exc_info=None, **fields):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "Routed turn", (), exc_info)
        for key, value in fields.items():
            setattr(record, key, value)
        return record

    def test_fields_follow_message_in_order(self):
        line = KeyValueFormatter().format(self._record(tier="simple", route="local"))
        assert line.endswith("Routed turn route=local tier=simple")

    def test_no_fields_leaves_line_alone(self):
        assert KeyValueFormatter().format(self._record()).endswith("Routed turn")

    def test_fields_stay_on_first_line_with_traceback(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = self._record(exc_info=sys.exc_info(), trace_id="abcd1234")
        first, _, rest = KeyValueFormatter().format(record).partition("\n")
        assert first.endswith("trace_id=abcd1234")
        assert "RuntimeError: boom" in rest
