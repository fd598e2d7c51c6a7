from itertools import islice

import pytest

from lampstack.exceptions import ReadinessTimeoutError
from lampstack.readiness import backoff_delays, wait_until_ready


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_backoff_delays_are_capped():
    assert list(islice(backoff_delays(1, 2, 5), 5)) == [1, 2, 4, 5, 5]


def test_ready_on_first_attempt_does_not_sleep():
    clock = FakeClock()
    attempts = wait_until_ready(lambda budget: True, "db", retries=5, delay=1, sleep=clock.sleep, clock=clock)
    assert attempts == 1
    assert clock.sleeps == []


def test_becomes_ready_after_backoff():
    clock = FakeClock()
    answers = iter([False, False, True])
    attempts = wait_until_ready(
        lambda budget: next(answers), "db", retries=5, delay=1, backoff=2, sleep=clock.sleep, clock=clock
    )
    assert attempts == 3
    assert clock.sleeps == [1, 2]


def test_never_ready_stops_after_retries():
    clock = FakeClock()
    with pytest.raises(ReadinessTimeoutError) as info:
        wait_until_ready(
            lambda budget: False, "db", retries=4, delay=1, backoff=1, timeout=100,
            sleep=clock.sleep, clock=clock,
        )
    assert info.value.attempts == 4
    assert len(clock.sleeps) == 3


def test_never_ready_respects_overall_timeout():
    clock = FakeClock()
    with pytest.raises(ReadinessTimeoutError) as info:
        wait_until_ready(
            lambda budget: False, "db", retries=1000, delay=4, backoff=2, max_delay=30, timeout=20,
            sleep=clock.sleep, clock=clock,
        )
    assert sum(clock.sleeps) <= 20
    assert info.value.waited <= 20
    assert "db not ready" in str(info.value)


def test_on_retry_callback_sees_each_wait():
    clock = FakeClock()
    seen = []
    with pytest.raises(ReadinessTimeoutError):
        wait_until_ready(
            lambda budget: False, "db", retries=3, delay=1, backoff=3,
            sleep=clock.sleep, clock=clock, on_retry=lambda n, w: seen.append((n, w)),
        )
    assert seen == [(1, 1), (2, 3)]


def test_slow_check_cannot_overrun_the_deadline():
    clock = FakeClock()
    budgets = []

    def slow_check(budget):
        budgets.append(budget)
        clock.now += min(budget, 30)
        return False

    with pytest.raises(ReadinessTimeoutError) as info:
        wait_until_ready(
            slow_check, "db", retries=10, delay=2.9, timeout=3,
            sleep=clock.sleep, clock=clock,
        )

    assert clock.now <= 3
    assert info.value.waited <= 3
    assert budgets == [3]


def test_check_errors_propagate():
    def broken(budget):
        raise RuntimeError("check crashed")

    with pytest.raises(RuntimeError, match="check crashed"):
        wait_until_ready(broken, "db", retries=3, delay=1, sleep=lambda s: None)
