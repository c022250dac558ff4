"""Exponential smoothing of estimated positions across sweeps."""
from __future__ import annotations

from typing import Optional, Tuple

Position = Tuple[float, float]


class PositionFilter:
    """Exponential moving average of (x, y).

    One filter belongs to one localization session; the first update seeds
    it, later updates blend towards the new value by ``alpha``.
    """

    def __init__(self, alpha: float = 0.2):
        self.alpha = alpha
        self._value: Optional[Position] = None

    @property
    def value(self) -> Optional[Position]:
        return self._value

    @property
    def is_seeded(self) -> bool:
        return self._value is not None

    def update(self, position: Position, alpha: Optional[float] = None) -> Position:
        if alpha is None:
            alpha = self.alpha
        if self._value is None:
            self._value = (float(position[0]), float(position[1]))
        else:
            sx, sy = self._value
            self._value = (
                sx * (1 - alpha) + position[0] * alpha,
                sy * (1 - alpha) + position[1] * alpha,
            )
        return self._value

    def reset(self):
        self._value = None
