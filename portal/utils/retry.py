"""Backoff helpers for queue retries."""

from __future__ import annotations

import random

__all__ = ["backoff_delay_ms"]


def backoff_delay_ms(
    base_ms: int,
    attempt: int,
    *,
    jitter_pct: int = 0,
    rng: random.Random | None = None,
) -> int:
    """Delay before re-running a job that just failed its ``attempt``-th run."""

    delay = max(1, int(base_ms)) * (2 ** max(0, int(attempt) - 1))
    pct = max(0, int(jitter_pct))
    if not pct:
        return delay
    spread = delay * pct / 100.0
    source = rng or random
    return max(0, int(source.uniform(delay - spread, delay + spread)))
