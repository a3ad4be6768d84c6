import logging
import random
import time
from typing import Callable, Optional, Sequence

from models import IntervalPhase

MIN_INTERVAL_SECONDS = 3.0
INTERVAL_JITTER_RATIO = 0.1
BLOCK_COOLDOWN_MINUTES = (5, 15, 30, 60)


def apply_jitter(
    interval_seconds: float,
    *,
    ratio: float = INTERVAL_JITTER_RATIO,
    rng: Optional[random.Random] = None,
) -> float:
    jitter = interval_seconds * (rng or random).uniform(-ratio, ratio)
    return max(MIN_INTERVAL_SECONDS, interval_seconds + jitter)


def block_cooldown_seconds(block_count: int) -> int:
    """Cooldown after the ``block_count``-th IP block of a run (0-based), capped at the last tier."""
    tier = BLOCK_COOLDOWN_MINUTES[min(max(0, block_count), len(BLOCK_COOLDOWN_MINUTES) - 1)]
    return tier * 60


class IntervalSchedule:
    """Time-varying check cadence.

    Without phases the base interval is used. With phases, the wall-clock time
    elapsed since the last reset picks the active phase by cumulative
    duration; once every phase has run its course the schedule starts over
    from the first phase and the anchor moves to "now".
    """

    def __init__(
        self,
        base_seconds: float,
        phases: Sequence[IntervalPhase] = (),
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.base_seconds = base_seconds
        self.phases = tuple(phases)
        self._clock = clock
        self._rng = rng
        self.anchor = clock()
        self.phase_index = 0

    @property
    def total_minutes(self) -> float:
        return sum(phase.duration_minutes for phase in self.phases)

    def reset(self, now: Optional[float] = None) -> None:
        self.anchor = self._clock() if now is None else now
        self.phase_index = 0

    def current_interval(self) -> float:
        if not self.phases or self.total_minutes <= 0:
            return self.base_seconds

        now = self._clock()
        elapsed_minutes = (now - self.anchor) / 60.0

        accumulated = 0.0
        for index, phase in enumerate(self.phases):
            accumulated += phase.duration_minutes
            if elapsed_minutes < accumulated:
                if index != self.phase_index:
                    self.phase_index = index
                    logging.info(
                        "Interval schedule: switching to %ss for next %s min",
                        phase.seconds,
                        phase.duration_minutes,
                    )
                return phase.seconds

        self.reset(now)
        first = self.phases[0]
        logging.info(
            "Interval schedule: restarting cycle - %ss for %s min",
            first.seconds,
            first.duration_minutes,
        )
        return first.seconds

    def next_wait_seconds(self) -> float:
        return apply_jitter(self.current_interval(), rng=self._rng)
