"""Request pacing and account rotation.

Every account has its own clock of "last query time".  Before a request the
calling thread sleeps until a jittered delay has elapsed since the previous
request of that account, so no two requests of one account are ever in
flight together.  When the remote service asks for a human verification the
pool rotates to the next account; wrapping back to the first account means
the whole pool was used up and a cooldown is enforced.
"""

from __future__ import annotations

import datetime as _dt
import logging
import random
import threading
import time
from typing import Callable, List, Optional, Sequence

from .config import Account
from .errors import Cancelled

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], None]


def _seconds(value) -> float:
    if isinstance(value, _dt.timedelta):
        return value.total_seconds()
    return float(value)


def stoppable_sleep(stop: threading.Event, sleep: Optional[Sleep] = None) -> Sleep:
    """Return a sleep that raises :class:`Cancelled` once ``stop`` is set.

    Without ``sleep`` the wait itself is ``stop.wait`` and returns as soon as
    the stop is requested.
    """

    def _sleep(seconds: float) -> None:
        if stop.is_set():
            raise Cancelled("stop requested")
        if sleep is None:
            stop.wait(seconds)
        else:
            sleep(seconds)
        if stop.is_set():
            raise Cancelled("stop requested")

    return _sleep


def jitter_delay(period, rng: Optional[random.Random] = None) -> float:
    """Return a delay in ``[2P/3, 4P/3)`` seconds for an average period ``P``."""
    floor = 2.0 * _seconds(period) / 3.0
    if floor <= 0:
        return 0.0
    draw = (rng or random).random()
    return floor + draw * floor


class RateLimiter:
    """Per-account minimum, jittered spacing between requests."""

    def __init__(
        self,
        period,
        nb_accounts: int,
        *,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleep] = None,
        rng: Optional[random.Random] = None,
        stop: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.period = _seconds(period)
        self._last_query: List[Optional[float]] = [None] * nb_accounts
        self.clock = clock
        self.stop = stop or threading.Event()
        self.sleep = stoppable_sleep(self.stop, sleep)
        self._rng = rng or random.Random()
        self._logger = logger or logging.getLogger(__name__)

    def last_query_time(self, account_index: int) -> Optional[float]:
        return self._last_query[account_index]

    def wait_time(self, account_index: int, now: Optional[float] = None) -> float:
        last = self._last_query[account_index]
        if last is None:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, jitter_delay(self.period, self._rng) - (now - last))

    def pace(self, account_index: int) -> float:
        """Sleep as long as needed for ``account_index``, then stamp it. Returns the wait."""
        now = self.clock()
        waiting = self.wait_time(account_index, now)
        if waiting > 0:
            self._logger.debug("Pacing: waiting %.1fs before next request", waiting)
            self.sleep(waiting)
            now += waiting
        self._last_query[account_index] = now
        return waiting

    def stamp(self, account_index: int) -> None:
        """Record a request that bypassed pacing."""
        self._last_query[account_index] = self.clock()


class AccountRotator:
    """Fixed, ordered pool of accounts with a wrapping cursor."""

    def __init__(
        self,
        accounts: Sequence[Account],
        limiter: RateLimiter,
        cooldown,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not accounts:
            raise ValueError("at least one account is required")
        self.accounts = tuple(accounts)
        self.current = 0
        self.cooldown = _seconds(cooldown)
        self._limiter = limiter
        self._logger = logger or logging.getLogger(__name__)

    @property
    def account(self) -> Account:
        return self.accounts[self.current]

    def __len__(self) -> int:
        return len(self.accounts)

    def rotate(self) -> int:
        """Switch to the next account and return its index.

        With a single account this does nothing.  Landing back on index 0
        blocks until ``cooldown`` has elapsed since account 0's last request.
        """
        if len(self.accounts) == 1:
            return self.current
        self.current = (self.current + 1) % len(self.accounts)
        self._logger.info("Switched to account %s", self.account.email)
        if self.current == 0:
            self._cool_down()
        return self.current

    def _cool_down(self) -> None:
        last = self._limiter.last_query_time(0)
        if last is None:
            return
        remaining = last + self.cooldown - self._limiter.clock()
        if remaining > 0:
            self._logger.warning(
                "All accounts hit a verification challenge, waiting %s before next request",
                _dt.timedelta(seconds=round(remaining)),
            )
            self._limiter.sleep(remaining)


class ReminderGate:
    """Opens at most once per ``period``; used for the open-orders listing."""

    def __init__(self, period, *, clock: Clock = time.monotonic) -> None:
        self.period = _seconds(period)
        self.clock = clock
        self._last: Optional[float] = None

    def ready(self) -> bool:
        now = self.clock()
        if self._last is None or self._last + self.period < now:
            self._last = now
            return True
        return False


__all__ = ["stoppable_sleep", "jitter_delay", "RateLimiter", "AccountRotator", "ReminderGate"]
