"""Shared utilities for Repair Brain."""

import re
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog

_TOKEN_STRIP = re.compile(r"[^a-z0-9\s_-]")
_TOKEN_SPLIT = re.compile(r"[\s_-]+")


@asynccontextmanager
async def timed_operation(
    name: str,
    log: structlog.stdlib.BoundLogger | None = None,
    **extra: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Context manager that measures elapsed time for an async operation.

    Usage::

        async with timed_operation("apply_fix", log=log) as timing:
            await handler(option)
        print(timing["elapsed_ms"])

    Yields:
        A mutable dict that will contain ``elapsed_ms`` after the block exits.
    """
    start = time.perf_counter()
    result: dict[str, Any] = {}
    try:
        yield result
    finally:
        result["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
        if log:
            log.info(name, duration_ms=result["elapsed_ms"], **extra)


def generate_id(prefix: str) -> str:
    """Default id factory: a prefixed, collision-resistant identifier."""
    return f"{prefix}_{uuid.uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(UTC)


def tokenize(text: str | None) -> list[str]:
    """Split free text into lowercase word tokens.

    Punctuation is dropped; whitespace, underscores and hyphens separate
    tokens.
    """
    if not text:
        return []
    cleaned = _TOKEN_STRIP.sub(" ", text.lower())
    return [tok for tok in _TOKEN_SPLIT.split(cleaned) if tok]


def overlap_score(tokens_a: list[str], tokens_b: list[str]) -> float:
    """Jaccard overlap of two token lists, in ``[0, 1]``."""
    if not tokens_a or not tokens_b:
        return 0.0
    set_a = set(tokens_a)
    set_b = set(tokens_b)
    union = set_a | set_b
    return len(set_a & set_b) / len(union) if union else 0.0


def format_duration(minutes: float) -> str:
    """Render a rough horizon such as ``~45 minutes`` or ``~3 hours``."""
    if minutes <= 0:
        return "imminent"
    if minutes < 60:
        return _plural(max(round(minutes), 1), "minute")
    hours = minutes / 60
    if hours < 24:
        return _plural(round(hours), "hour")
    return _plural(round(hours / 24), "day")


def _plural(count: int, unit: str) -> str:
    return f"~{count} {unit}" if count == 1 else f"~{count} {unit}s"
