"""
Weighted item selection for case openings.

An item wins when its cumulative chance is strictly greater than the draw, so
a draw of exactly 10.0 against ``[A:10, B:30, ...]`` selects B. Draws are in
``[0, 100)``.
"""
import random
from typing import Callable, Protocol, Sequence

_system_random = random.SystemRandom()


class WeightedItem(Protocol):
    item_id: int
    chance_percent: float


def secure_draw() -> float:
    """
    Uniform draw in [0, 100) from the operating system CSPRNG.
    """
    return _system_random.random() * 100


def select(items: Sequence[WeightedItem], draw: float) -> int:
    if not items:
        raise ValueError("cannot select from an empty item list")
    cumulative = 0.0
    for item in items:
        cumulative += item.chance_percent
        if cumulative > draw:
            return item.item_id
    # Rounding left the running sum short of the draw.
    return items[-1].item_id


class ItemSelector:
    def __init__(self, draw_source: Callable[[], float] = secure_draw):
        self.draw_source = draw_source

    def select(self, items: Sequence[WeightedItem]) -> int:
        return select(items, self.draw_source())
