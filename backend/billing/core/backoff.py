"""Exponential backoff helpers shared by retry loops."""

from __future__ import annotations


def backoff_delay(base_delay_ms: int | float, attempt_index: int) -> float:
    """Delay in milliseconds before retry number ``attempt_index`` (zero-based).

    The first retry waits ``base_delay_ms``, the second twice that, and so on.
    """

    if attempt_index < 0:
        raise ValueError("attempt_index must be zero or positive")
    return float(base_delay_ms) * (2**attempt_index)


def backoff_seconds(base_delay_ms: int | float, attempt_index: int) -> float:
    return backoff_delay(base_delay_ms, attempt_index) / 1000.0
