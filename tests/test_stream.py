"""Tests for incremental NDJSON decoding."""

import json
import logging

import pytest

from local_inference_router.pipeline.stream import parse_ndjson_stream


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _collect(*parts: bytes, logger_name: str = "stream") -> list:
    return [r async for r in parse_ndjson_stream(_chunks(*parts), logger_name)]


class TestParseNdjsonStream:
    @pytest.mark.asyncio
    async def test_one_record_per_line(self):
        records = await _collect(b'{"a": 1}\n{"a": 2}\n')
        assert records == [{"a": 1}, {"a": 2}]

    @pytest.mark.asyncio
    async def test_records_split_across_chunks(self):
        records = await _collect(b'{"message": {"con', b'tent": "hi"}}\n{"do', b'ne": true}\n')
        assert records == [{"message": {"content": "hi"}}, {"done": True}]

    @pytest.mark.asyncio
    async def test_multibyte_character_split_across_chunks(self):
        encoded = json.dumps({"text": "héllo 日本"}, ensure_ascii=False).encode("utf-8")
        # Split inside the three-byte sequence for 日
        split_at = encoded.index("日".encode("utf-8")) + 1
        records = await _collect(encoded[:split_at], encoded[split_at:] + b"\n")
        assert records == [{"text": "héllo 日本"}]

    @pytest.mark.asyncio
    async def test_trailing_line_without_newline(self):
        records = await _collect(b'{"a": 1}\n{"done": true}')
        assert records == [{"a": 1}, {"done": True}]

    @pytest.mark.asyncio
    async def test_blank_lines_ignored(self):
        records = await _collect(b'\n\n{"a": 1}\n   \n\n')
        assert records == [{"a": 1}]

    @pytest.mark.asyncio
    async def test_malformed_line_skipped_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            records = await _collect(
                b'{"a": 1}\nnot json\n{"a": 2}\n', logger_name="ollama-stream"
            )
        assert records == [{"a": 1}, {"a": 2}]
        assert any("ollama-stream" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_malformed_trailing_data_skipped(self, caplog):
        with caplog.at_level(logging.WARNING):
            records = await _collect(b'{"a": 1}\n{"a": ')
        assert records == [{"a": 1}]
        assert any("trailing" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_empty_source(self):
        assert await _collect() == []

    @pytest.mark.asyncio
    async def test_crlf_line_endings(self):
        records = await _collect(b'{"a": 1}\r\n{"a": 2}\r\n')
        assert records == [{"a": 1}, {"a": 2}]
