"""Incremental NDJSON decoding for chunked backend responses.

Backends stream one JSON record per line, but transport chunks are not
aligned to lines, or even to UTF-8 code points. The decoder keeps a
stateful UTF-8 decoder plus a pending-line buffer across reads.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 120


def _parse_line(line: str, logger_name: str, trailing: bool = False) -> tuple[bool, Any]:
    try:
        return True, json.loads(line)
    except ValueError:
        logger.warning(
            "[%s] Skipping malformed NDJSON %s: %s",
            logger_name,
            "trailing data" if trailing else "line",
            line[:_PREVIEW_CHARS],
        )
        return False, None


async def parse_ndjson_stream(
    chunks: AsyncIterable[bytes],
    logger_name: str = "stream",
) -> AsyncIterator[Any]:
    """Yield decoded JSON records from a byte-chunk source, in line order.

    Malformed lines are skipped with a warning; ``logger_name`` only tags
    that warning. A final unterminated line is parsed once the source ends.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for chunk in chunks:
        if not chunk:
            continue
        buffer += decoder.decode(chunk)
        lines = buffer.split("\n")
        buffer = lines.pop()

        for line in lines:
            stripped = line.strip()
            if not stripped:
                continue
            ok, record = _parse_line(stripped, logger_name)
            if ok:
                yield record

    buffer += decoder.decode(b"", final=True)
    stripped = buffer.strip()
    if stripped:
        ok, record = _parse_line(stripped, logger_name, trailing=True)
        if ok:
            yield record
