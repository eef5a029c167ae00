import sys

sys.path.insert(0, '.')

import pytest

from ingest.backoff import RetryPolicy, backoff_delay, backoff_schedule


def test_default_schedule_doubles_from_one_second():
    assert backoff_schedule() == [1000, 2000, 4000]


def test_delay_is_capped():
    assert [backoff_delay(a) for a in range(6)] == [1000, 2000, 4000, 8000, 10000, 10000]


def test_policy_delays_in_seconds():
    policy = RetryPolicy(max_retries=5, initial_delay_ms=500, max_delay_ms=3000)
    assert policy.schedule_ms() == [500, 1000, 2000, 3000, 3000]
    assert policy.delay_s(1) == pytest.approx(1.0)


def test_negative_attempt_rejected():
    with pytest.raises(ValueError):
        backoff_delay(-1)
