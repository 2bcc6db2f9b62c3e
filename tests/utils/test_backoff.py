import random

from portal.utils.retry import backoff_delay_ms


def test_backoff_doubles_per_attempt() -> None:
    assert [backoff_delay_ms(5000, attempt) for attempt in (1, 2, 3)] == [5000, 10000, 20000]


def test_backoff_clamps_invalid_inputs() -> None:
    assert backoff_delay_ms(0, 0) == 1
    assert backoff_delay_ms(1000, -3) == 1000


def test_jitter_stays_within_spread() -> None:
    rng = random.Random(7)

    delays = [backoff_delay_ms(1000, 2, jitter_pct=20, rng=rng) for _ in range(50)]

    assert all(1600 <= delay <= 2400 for delay in delays)
    assert len(set(delays)) > 1
