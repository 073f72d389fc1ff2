from __future__ import annotations

import threading
from typing import Dict, Optional, Tuple

import structlog
from pydantic import BaseModel
from sqlalchemy import select

from codemend.config.remediation import CalibrationConfig
from codemend.store.engine import StorageEngine
from codemend.store.models import StrategyOutcomeRecord

logger = structlog.get_logger()

_STRIPES = 32


class CalibrationStats(BaseModel):
    strategy: str
    domain: str
    observations: int
    successes: int
    success_rate: float
    applied_rate: float
    reliability: str


def reliability_label(observations: int, success_rate: float, min_observations: int) -> str:
    if observations < min_observations:
        return "unknown"
    if success_rate >= 0.8:
        return "high"
    if success_rate >= 0.5:
        return "medium"
    return "low"


class ConfidenceCalibrator:
    """
    Scales a strategy's self-reported confidence by how often that strategy's
    fixes actually held for the same kind of issue.

    Accuracy is tracked per (strategy, domain) over a rolling window of recent
    outcomes. Until ``min_observations`` outcomes exist the raw confidence is
    returned unchanged.
    """

    def __init__(self, storage: StorageEngine, config: Optional[CalibrationConfig] = None):
        self.storage = storage
        self.config = config or CalibrationConfig()
        self._cache: Dict[Tuple[str, str], Tuple[int, int]] = {}
        self._generation: Dict[Tuple[str, str], int] = {}
        self._cache_lock = threading.Lock()
        self._locks = [threading.Lock() for _ in range(_STRIPES)]

    def calibrate(self, strategy: str, domain: str, raw: float) -> float:
        rate = self.success_rate(strategy, domain)
        return max(0.0, min(1.0, raw * rate))

    def success_rate(self, strategy: str, domain: str) -> float:
        observations, successes = self._window(strategy, domain)
        if observations < self.config.min_observations:
            return 1.0
        return successes / observations

    def observe(self, strategy: str, domain: str, success: bool, confidence: Optional[float] = None) -> None:
        key = (strategy, domain)
        with self._locks[hash(key) % _STRIPES]:
            with self.storage.transaction() as session:
                session.add(
                    StrategyOutcomeRecord(strategy=strategy, domain=domain, success=success, confidence=confidence)
                )
            with self._cache_lock:
                self._cache.pop(key, None)
                self._generation[key] = self._generation.get(key, 0) + 1
        logger.debug("calibration_observed", strategy=strategy, domain=domain, success=success)

    def stats(self, strategy: str, domain: str) -> CalibrationStats:
        observations, successes = self._window(strategy, domain)
        rate = successes / observations if observations else 0.0
        return CalibrationStats(
            strategy=strategy,
            domain=domain,
            observations=observations,
            successes=successes,
            success_rate=rate,
            applied_rate=self.success_rate(strategy, domain),
            reliability=reliability_label(observations, rate, self.config.min_observations),
        )

    def _window(self, strategy: str, domain: str) -> Tuple[int, int]:
        key = (strategy, domain)
        with self._cache_lock:
            cached = self._cache.get(key)
            generation = self._generation.get(key, 0)
        if cached is not None:
            return cached
        with self.storage.session() as session:
            outcomes = session.execute(
                select(StrategyOutcomeRecord.success)
                .where(StrategyOutcomeRecord.strategy == strategy, StrategyOutcomeRecord.domain == domain)
                .order_by(StrategyOutcomeRecord.id.desc())
                .limit(self.config.window)
            ).scalars().all()
        value = (len(outcomes), sum(1 for o in outcomes if o))
        with self._cache_lock:
            # An observation landed while we were reading; do not cache a stale window.
            if self._generation.get(key, 0) == generation:
                self._cache[key] = value
        return value
