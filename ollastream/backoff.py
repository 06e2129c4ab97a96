"""Retry delay policy shared by the health prober and the model registry."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Iterator

from .config import ResilienceConfig


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff with proportional jitter and an upper cap.

    Delays are in seconds. Attempt numbers start at 1.
    """

    base: float
    cap: float = 10.0
    jitter: float = 0.1
    exponential: bool = True
    rng: Callable[[], float] = random.random

    @classmethod
    def from_config(cls, config: ResilienceConfig, base: float) -> "Backoff":
        return cls(
            base=base,
            cap=config.max_backoff,
            jitter=config.jitter,
            exponential=config.advanced_backoff,
        )

    def nominal(self, attempt: int) -> float:
        """Delay for ``attempt`` without jitter."""

        if not self.exponential:
            return min(self.base, self.cap)
        return min(self.base * 2 ** (max(attempt, 1) - 1), self.cap)

    def delay(self, attempt: int) -> float:
        nominal = self.nominal(attempt)
        if not self.exponential:
            return nominal
        return min(nominal * (1 + self.jitter * self.rng()), self.cap)

    def delays(self, attempts: int) -> Iterator[float]:
        for attempt in range(1, attempts + 1):
            yield self.delay(attempt)
