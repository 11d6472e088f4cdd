import datetime as dt
import random
import threading
import time

import pytest

from tgtg_ant.config import Account
from tgtg_ant.errors import Cancelled
from tgtg_ant.rotation import (AccountRotator, RateLimiter, ReminderGate, jitter_delay,
                               stoppable_sleep)

from .conftest import FakeClock


def make_limiter(clock: FakeClock, nb_accounts: int = 1, period: float = 45.0) -> RateLimiter:
    return RateLimiter(period, nb_accounts, clock=clock.monotonic, sleep=clock.sleep, rng=random.Random(7))


def make_rotator(clock: FakeClock, nb_accounts: int, cooldown: float = 5400.0):
    accounts = [Account(f"user{i}@example.com") for i in range(nb_accounts)]
    limiter = make_limiter(clock, nb_accounts)
    return AccountRotator(accounts, limiter, cooldown), limiter


class TestJitterDelay:
    """Delay drawn uniformly in [2P/3, 4P/3)."""

    def test_bounds(self):
        rng = random.Random(1)
        delays = [jitter_delay(45, rng) for _ in range(2000)]
        assert min(delays) >= 30.0
        assert max(delays) < 60.0

    def test_spread_over_the_whole_range(self):
        rng = random.Random(2)
        delays = [jitter_delay(dt.timedelta(seconds=45), rng) for _ in range(2000)]
        assert min(delays) < 31.0
        assert max(delays) > 59.0
        assert sum(delays) / len(delays) == pytest.approx(45.0, abs=1.0)

    def test_zero_period(self):
        assert jitter_delay(0) == 0.0


class TestRateLimiter:
    def test_first_request_is_not_delayed(self):
        clock = FakeClock()
        limiter = make_limiter(clock)

        assert limiter.pace(0) == 0.0
        assert clock.sleeps == []
        assert limiter.last_query_time(0) == clock.monotonic()

    def test_next_request_waits_for_the_jittered_delay(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        limiter.pace(0)
        clock.advance(10)

        waited = limiter.pace(0)

        assert 20.0 <= waited < 50.0
        assert clock.sleeps == [waited]
        assert limiter.last_query_time(0) == clock.monotonic()

    def test_no_wait_once_the_period_has_elapsed(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        limiter.pace(0)
        clock.advance(61)

        assert limiter.pace(0) == 0.0
        assert clock.sleeps == []

    def test_accounts_are_paced_independently(self):
        clock = FakeClock()
        limiter = make_limiter(clock, nb_accounts=2)
        limiter.pace(0)

        assert limiter.pace(1) == 0.0
        assert limiter.wait_time(0) > 0.0

    def test_stamp_records_without_sleeping(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        limiter.stamp(0)
        limiter.stamp(0)

        assert clock.sleeps == []
        assert limiter.wait_time(0) >= 30.0


class TestAccountRotator:
    def test_rotation_is_cyclic(self):
        clock = FakeClock()
        rotator, _ = make_rotator(clock, 3, cooldown=0)

        assert [rotator.rotate() for _ in range(6)] == [1, 2, 0, 1, 2, 0]

    def test_single_account_does_not_rotate(self):
        clock = FakeClock()
        rotator, limiter = make_rotator(clock, 1)
        limiter.pace(0)

        assert rotator.rotate() == 0
        assert clock.sleeps == []

    def test_wrapping_waits_for_the_cooldown(self):
        clock = FakeClock()
        rotator, limiter = make_rotator(clock, 2, cooldown=5400)
        limiter.pace(0)
        clock.advance(400)

        rotator.rotate()
        assert clock.sleeps == []
        rotator.rotate()

        assert rotator.current == 0
        assert clock.sleeps == [5000]

    def test_no_cooldown_when_it_has_already_elapsed(self):
        clock = FakeClock()
        rotator, limiter = make_rotator(clock, 2, cooldown=60)
        limiter.pace(0)
        clock.advance(120)

        rotator.rotate()
        rotator.rotate()

        assert clock.sleeps == []

    def test_no_cooldown_before_any_request(self):
        clock = FakeClock()
        rotator, _ = make_rotator(clock, 2)

        rotator.rotate()
        rotator.rotate()

        assert clock.sleeps == []

    def test_requires_accounts(self):
        clock = FakeClock()
        with pytest.raises(ValueError):
            AccountRotator([], make_limiter(clock), 0)


class TestReminderGate:
    def test_opens_once_per_period(self):
        clock = FakeClock()
        gate = ReminderGate(dt.timedelta(minutes=10), clock=clock.monotonic)

        assert gate.ready()
        assert not gate.ready()
        clock.advance(600)
        assert not gate.ready()
        clock.advance(1)
        assert gate.ready()
        assert not gate.ready()


class TestStoppableSleep:
    """Waits give up as soon as a stop is requested."""

    def test_stop_wakes_up_a_real_wait(self):
        stop = threading.Event()
        sleep = stoppable_sleep(stop)
        timer = threading.Timer(0.05, stop.set)
        started = time.monotonic()
        timer.start()
        try:
            with pytest.raises(Cancelled):
                sleep(60)
        finally:
            timer.cancel()
        assert time.monotonic() - started < 10

    def test_already_stopped_does_not_sleep(self):
        clock = FakeClock()
        stop = threading.Event()
        stop.set()

        with pytest.raises(Cancelled):
            stoppable_sleep(stop, clock.sleep)(30)
        assert clock.sleeps == []

    def test_pacing_is_interrupted(self):
        clock = FakeClock()
        stop = threading.Event()
        limiter = RateLimiter(45, 1, clock=clock.monotonic, sleep=clock.sleep, stop=stop)
        limiter.pace(0)
        stop.set()

        with pytest.raises(Cancelled):
            limiter.pace(0)
        assert clock.sleeps == []

    def test_cooldown_is_interrupted(self):
        clock = FakeClock()
        stop = threading.Event()
        limiter = RateLimiter(45, 2, clock=clock.monotonic, sleep=clock.sleep, stop=stop)
        rotator = AccountRotator([Account("a@example.com"), Account("b@example.com")], limiter, 5400)
        limiter.pace(0)
        rotator.rotate()
        stop.set()

        with pytest.raises(Cancelled):
            rotator.rotate()
        assert clock.sleeps == []
