"""
Deterministic random source for reproducible probabilistic decisions.

Seeded from a string such as ``"<simulation>:<record>"`` so the same record in
the same simulation always draws the same sequence, across processes and
restarts (``random.Random`` seeds strings through SHA-512, unaffected by hash
randomisation).
"""

from __future__ import annotations

import random
from typing import Optional, Sequence, TypeVar

T = TypeVar("T")


class DeterministicRng:
    def __init__(self, seed: str | int) -> None:
        self.seed = seed
        self._random = random.Random(seed if isinstance(seed, int) else str(seed))

    @classmethod
    def for_record(cls, simulation_id: int, record_index: int) -> "DeterministicRng":
        return cls(f"{simulation_id}:{record_index}")

    def next_float(self) -> float:
        return self._random.random()

    def next_int(self, minimum: int, maximum_inclusive: int) -> int:
        return self._random.randint(minimum, maximum_inclusive)

    def chance(self, probability: float) -> bool:
        return self._random.random() < probability

    def pick(self, items: Sequence[T]) -> Optional[T]:
        return self._random.choice(items) if items else None

    def shuffle(self, items: list) -> None:
        self._random.shuffle(items)

    __call__ = next_float


__all__ = ["DeterministicRng"]
