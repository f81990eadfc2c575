# =============================================
# File: app/utils/timing.py
# Purpose: Millisecond stopwatch helpers (request middleware, advisor calls)
# =============================================
import time
from contextlib import contextmanager
from typing import Callable, Iterator

def now() -> float:
    return time.perf_counter()

def elapsed_ms(since: float) -> int:
    """Whole milliseconds since a now() reading."""
    return int((time.perf_counter() - since) * 1000)

@contextmanager
def stopwatch() -> Iterator[Callable[[], int]]:
    t0 = now()
    yield lambda: elapsed_ms(t0)
