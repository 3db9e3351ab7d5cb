"""Fuse tagged probe chunks into one result per original line."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Sequence

from clem.model import LineResult, OutputChunk

logger = logging.getLogger(__name__)

SEPARATOR = "  "
_TAG_RE = re.compile(r"^(?P<line>\d+):")


def parse_tag(text: str) -> tuple[int, str] | None:
    """Split ``"<line>:payload"`` into its line index and payload."""
    match = _TAG_RE.match(text)
    if match is None:
        return None
    return int(match.group("line")), text[match.end() :]


def encode_payload(payload: str) -> str:
    return payload.replace("\r\n", "\n").replace("\n", "\\n")


def _as_chunk(chunk: OutputChunk | str) -> OutputChunk:
    return chunk if isinstance(chunk, OutputChunk) else OutputChunk(chunk)


def fuse(chunks: Iterable[OutputChunk | str]) -> list[LineResult]:
    """Merge chunks by tag, ordered by line index.

    Exact duplicates are dropped (first occurrence wins), payloads of the same
    line are trimmed and joined in encounter order, and lines whose merged
    payload is empty are left out. Chunks without a tag are skipped.
    """
    seen: set[tuple[str, bool]] = set()
    payloads: dict[int, list[str]] = {}
    errors: set[int] = set()
    for raw in chunks:
        chunk = _as_chunk(raw)
        key = (chunk.text, chunk.is_error)
        if key in seen:
            continue
        seen.add(key)
        parsed = parse_tag(chunk.text)
        if parsed is None:
            logger.debug("dropping untagged chunk %r", chunk.text[:80])
            continue
        line, payload = parsed
        payloads.setdefault(line, []).append(payload.strip())
        if chunk.is_error:
            errors.add(line)
    results: list[LineResult] = []
    for line in sorted(payloads):
        value = SEPARATOR.join(part for part in payloads[line] if part)
        if not value:
            continue
        results.append(LineResult(line=line, value=encode_payload(value), is_error=line in errors))
    return results


def expand(results: Sequence[LineResult], length: int | None = None) -> list[LineResult]:
    """Dense form of ``results``: one entry per line, gaps filled with empty values."""
    by_line = {result.line: result for result in results}
    if length is None:
        length = max(by_line, default=-1) + 1
    return [by_line.get(line, LineResult(line=line, value="")) for line in range(length)]


def backfill(results: Sequence[LineResult]) -> list[LineResult]:
    """Fill every line below the last error with at least an empty entry."""
    error_lines = [result.line for result in results if result.is_error]
    if not error_lines:
        return list(results)
    limit = max(error_lines) + 1
    below = expand([result for result in results if result.line < limit], limit)
    return below + [result for result in results if result.line >= limit]
