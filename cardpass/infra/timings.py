# cardpass/infra/timings.py
from __future__ import annotations
import math
import time
from typing import Dict


class _Running:
    """Running count, mean and sum of squared deviations (Welford).

    Constant memory per kind, however long the process lives.
    """
    __slots__ = ("n", "mean", "m2")

    def __init__(self) -> None:
        self.n = 0
        self.mean = 0.0
        self.m2 = 0.0

    def add(self, value: float) -> None:
        self.n += 1
        delta = value - self.mean
        self.mean += delta / self.n
        self.m2 += delta * (value - self.mean)

    @property
    def std(self) -> float:
        # sample standard deviation
        return math.sqrt(self.m2 / (self.n - 1)) if self.n > 1 else 0.0


# one accumulator per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, _Running] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    acc = _TIMINGS.get(kind)
    if acc is None:
        acc = _TIMINGS[kind] = _Running()
    acc.add(float(value))


class timeit:
    """async usage:
        async with timeit("codes.redeem"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


def aggregates() -> Dict[str, Dict[str, float]]:
    return {
        kind: {"n": acc.n, "mean": acc.mean, "std": acc.std}
        for kind, acc in _TIMINGS.items()
    }


def reset() -> None:
    _TIMINGS.clear()
