"""Lightweight wall-clock timing.

Provides:
    - timer(): Context manager for wall-clock timing with optional sink
    - Stopwatch: Running clock for budgets (overall loop timeout, per-stage ms)

Used to measure:
    - SSIM computation (SSIMResult.performance_ms)
    - Full comparison pipeline
    - Per-round and overall elapsed time of the convergence loop

The clock is injectable so the loop's timeout logic can be tested without
sleeping.
"""

import logging
import time
from contextlib import contextmanager
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@contextmanager
def timer(name: str, sink: Optional[Callable[[str, float], None]] = None):
    """Context manager for wall-clock timing.

    Parameters
    ----------
    name : str
        Timer name (for logging/display)
    sink : Optional[Callable[[str, float], None]]
        Optional callback(name, elapsed_seconds).
        If None, logs at DEBUG level.

    Yields
    ------
    None

    Examples
    --------
    >>> with timer("compare_images"):
    ...     result = compare_images(design, screenshot)

    >>> timings = {}
    >>> with timer("ssim", sink=timings.__setitem__):
    ...     score = windowed_ssim(a, b)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        if sink is not None:
            sink(name, elapsed)
        else:
            logger.debug(f"{name}: {elapsed:.3f} s")


class Stopwatch:
    """Running wall-clock measured from construction (or last reset).

    Parameters
    ----------
    clock : Callable[[], float]
        Monotonic clock returning seconds, default time.perf_counter

    Examples
    --------
    >>> sw = Stopwatch()
    >>> run_round()
    >>> sw.elapsed_ms()
    1234
    >>> sw.exceeded(1800.0)
    False
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self._start = clock()

    def reset(self) -> None:
        self._start = self._clock()

    def elapsed(self) -> float:
        """Elapsed seconds."""
        return self._clock() - self._start

    def elapsed_ms(self) -> int:
        """Elapsed whole milliseconds."""
        return int(round(self.elapsed() * 1000.0))

    def exceeded(self, budget_s: float) -> bool:
        """True once elapsed time is strictly greater than ``budget_s``."""
        return self.elapsed() > budget_s

    def __repr__(self) -> str:
        return f"Stopwatch(elapsed={self.elapsed():.3f}s)"
