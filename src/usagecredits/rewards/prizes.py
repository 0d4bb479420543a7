"""Prize tables and weighted random selection.

The draw is a linear scan over the cumulative weight distribution:
pick r uniformly in [0, W), walk the pool in table order subtracting each
weight until r goes non-positive. The random source is injected so tests can
pin it; fairness of the stated weights matters, reproducibility does not.
"""

from __future__ import annotations

import random
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class PrizePool(str, Enum):
    STANDARD = "standard"
    WELCOME = "welcome"


@dataclass(frozen=True, slots=True)
class PrizeTableEntry:
    credit_value: int
    weight: int
    label: str
    pool: PrizePool


class RandomSource(Protocol):
    def random(self) -> float:
        """Return a float uniformly distributed in [0.0, 1.0)."""
        ...


def weighted_choice(entries: Sequence[PrizeTableEntry], rng: RandomSource) -> PrizeTableEntry:
    """Select one entry with probability weight / total_weight."""
    candidates = [e for e in entries if e.weight > 0]
    if not candidates:
        msg = "Prize pool has no entries with positive weight"
        raise ValueError(msg)

    total = sum(e.weight for e in candidates)
    r = rng.random() * total
    for entry in candidates:
        r -= entry.weight
        if r <= 0:
            return entry
    # Float rounding can leave a tiny positive remainder
    return candidates[-1]


class PrizeTable:
    """Read-only prize configuration split into pools."""

    def __init__(self, entries: Iterable[PrizeTableEntry], rng: RandomSource | None = None) -> None:
        self._entries = tuple(entries)
        for e in self._entries:
            if e.credit_value <= 0:
                msg = f"Prize '{e.label}' must award a positive credit value"
                raise ValueError(msg)
            if e.weight < 0:
                msg = f"Prize '{e.label}' has negative weight"
                raise ValueError(msg)
        self._rng: RandomSource = rng or random.Random()  # noqa: S311

    @property
    def entries(self) -> tuple[PrizeTableEntry, ...]:
        return self._entries

    def pool(self, pool: PrizePool) -> list[PrizeTableEntry]:
        return [e for e in self._entries if e.pool == pool]

    def draw(self, pool: PrizePool) -> PrizeTableEntry:
        return weighted_choice(self.pool(pool), self._rng)

    def value_range(self, pool: PrizePool) -> tuple[int, int]:
        values = [e.credit_value for e in self.pool(pool) if e.weight > 0]
        return min(values), max(values)


DEFAULT_PRIZES: list[PrizeTableEntry] = [
    # Standard pool: every spend milestone
    PrizeTableEntry(1, 30, "1 Credit", PrizePool.STANDARD),
    PrizeTableEntry(2, 25, "2 Credits", PrizePool.STANDARD),
    PrizeTableEntry(3, 20, "3 Credits", PrizePool.STANDARD),
    PrizeTableEntry(5, 15, "5 Credits", PrizePool.STANDARD),
    PrizeTableEntry(10, 10, "10 Credits", PrizePool.STANDARD),
    # Welcome pool: first-ever spin
    PrizeTableEntry(5, 40, "5 Credits", PrizePool.WELCOME),
    PrizeTableEntry(10, 30, "10 Credits", PrizePool.WELCOME),
    PrizeTableEntry(15, 20, "15 Credits", PrizePool.WELCOME),
    PrizeTableEntry(20, 10, "20 Credits", PrizePool.WELCOME),
]


def default_prize_table() -> PrizeTable:
    return PrizeTable(DEFAULT_PRIZES)
