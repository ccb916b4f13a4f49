"""
Temporal distribution expansion.

Maps (method, count, window) to a sorted list of millisecond timestamps. The
function is pure: segment re-expansion after a cache miss must reproduce the
exact schedule computed at planning time, so no randomness is involved.
Unrecognised methods fall back to linear spacing.
"""

from __future__ import annotations

import math
from typing import Callable, Dict, List

from simcrm.domain.models import DistributionMethod

MS_PER_DAY = 24 * 60 * 60 * 1000
_SKEW_EXPONENT = 0.6


def _linear(q: float, i: int, span: int) -> float:
    return q


def _front_loaded(q: float, i: int, span: int) -> float:
    return q**_SKEW_EXPONENT


def _back_loaded(q: float, i: int, span: int) -> float:
    return 1 - (1 - q) ** _SKEW_EXPONENT


def _bell_curve(q: float, i: int, span: int) -> float:
    return 0.5 + 0.5 * math.sin((q - 0.5) * math.pi)


def _surge_mid(q: float, i: int, span: int) -> float:
    return q * 0.4 + math.sin(math.pi * q) * 0.6


def _trickle(q: float, i: int, span: int) -> float:
    # sqrt easing with a small fixed ripple
    return math.sqrt(q) + math.sin(i * 7.3) * 0.02


def _daily_spike(q: float, i: int, span: int) -> float:
    days = span / MS_PER_DAY
    day_phase = (q * days) % 1
    daily_peak = math.sin(day_phase * math.pi * 2 - math.pi / 2) * 0.5 + 0.5
    return q + (daily_peak * 0.2 - 0.1)


_SHAPERS: Dict[str, Callable[[float, int, int], float]] = {
    DistributionMethod.LINEAR.value: _linear,
    DistributionMethod.FRONT_LOADED.value: _front_loaded,
    DistributionMethod.BACK_LOADED.value: _back_loaded,
    DistributionMethod.BELL_CURVE.value: _bell_curve,
    DistributionMethod.SURGE_MID.value: _surge_mid,
    DistributionMethod.TRICKLE.value: _trickle,
    DistributionMethod.DAILY_SPIKE.value: _daily_spike,
}


def available_methods() -> List[str]:
    return sorted(_SHAPERS)


def expand_distribution(method: str | DistributionMethod, total: int, start: int, end: int) -> List[int]:
    """
    Expand a distribution into ``total`` ascending timestamps within [start, end].

    Parameters
    ----------
    method : str | DistributionMethod
        Distribution name (see ``available_methods``).
    total : int
        Number of records; zero or negative yields an empty list.
    start, end : int
        Window bounds in ms epoch. A zero-width window collapses everything to ``start``.
    """
    if total <= 0:
        return []
    span = end - start
    if span <= 0:
        return [start] * total

    key = method.value if isinstance(method, DistributionMethod) else str(method)
    shaper = _SHAPERS.get(key, _linear)
    points: List[int] = []
    for i in range(total):
        q = (i + 0.5) / total
        position = min(1.0, max(0.0, shaper(q, i, span)))
        # round half up, independent of float banker's rounding
        points.append(math.floor(start + position * span + 0.5))
    points.sort()
    return points


__all__ = ["available_methods", "expand_distribution"]
