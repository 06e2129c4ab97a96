"""Time-bounded caches for health probes and the installed model list."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from .models import HealthReport, ModelInfo

Clock = Callable[[], float]


@dataclass(frozen=True)
class HealthCacheEntry:
    is_healthy: bool
    checked_at: float
    model_name: Optional[str] = None
    model_available: Optional[bool] = None

    def to_report(self) -> HealthReport:
        return HealthReport(
            healthy=self.is_healthy,
            model_name=self.model_name,
            model_available=self.model_available,
        )


class HealthCache:
    """Remembers the last successful probe for ``ttl`` seconds.

    An entry recorded for model M answers only probes for M, and an entry
    recorded without a model answers only probes without a model.
    """

    def __init__(self, ttl: float = 30.0, *, clock: Clock = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entry: Optional[HealthCacheEntry] = None

    def get(self, model_name: Optional[str] = None) -> Optional[HealthCacheEntry]:
        entry = self._entry
        if entry is None:
            return None
        if self._clock() - entry.checked_at >= self.ttl:
            return None
        if (entry.model_name or None) != (model_name or None):
            return None
        return entry

    def store(
        self,
        is_healthy: bool,
        model_name: Optional[str] = None,
        model_available: Optional[bool] = None,
    ) -> HealthCacheEntry:
        entry = HealthCacheEntry(
            is_healthy=is_healthy,
            checked_at=self._clock(),
            model_name=model_name or None,
            model_available=model_available,
        )
        self._entry = entry
        return entry

    def invalidate(self) -> None:
        self._entry = None


class ModelListCache:
    def __init__(self, ttl: float = 30.0, *, clock: Clock = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._models: Optional[Tuple[ModelInfo, ...]] = None
        self._timestamp = 0.0

    def get(self) -> Optional[Tuple[ModelInfo, ...]]:
        if self._models is None:
            return None
        if self._clock() - self._timestamp >= self.ttl:
            return None
        return self._models

    def store(self, models: Sequence[ModelInfo]) -> Tuple[ModelInfo, ...]:
        self._models = tuple(models)
        self._timestamp = self._clock()
        return self._models

    def invalidate(self) -> None:
        self._models = None
        self._timestamp = 0.0
