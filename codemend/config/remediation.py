from __future__ import annotations

import os
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from codemend.models import Severity

STRATEGY_ORDER: List[str] = ["pattern_match", "codebase_similarity", "contextual", "generative"]
ESCALATION_ORDER: List[str] = ["security", "dependency"]


def default_concurrency() -> int:
    return min(32, (os.cpu_count() or 1) + 4)


class ScanOptions(BaseModel):
    """Options accepted by the scan trigger."""

    concurrency: int = Field(default_factory=default_concurrency, ge=1, description="Worker pool size.")
    auto_apply: bool = Field(True, description="Commit validated fixes without human approval.")
    severity_floor: Severity = Field(Severity.LOW, description="Issues below this severity are recorded but not remediated.")
    strategies: List[str] = Field(default_factory=lambda: list(STRATEGY_ORDER), description="Enabled chain strategies.")

    @field_validator("strategies")
    @classmethod
    def _known_strategies(cls, value: List[str]) -> List[str]:
        unknown = [s for s in value if s not in STRATEGY_ORDER]
        if unknown:
            raise ValueError(f"Unknown strategies: {', '.join(unknown)}")
        return value


class StrategyConfig(BaseModel):
    default_floor: float = Field(0.6, ge=0.0, le=1.0, description="Minimum calibrated confidence to accept a proposal.")
    floors: Dict[str, float] = Field(default_factory=dict, description="Per-strategy floor overrides.")
    escalation_floor: float = Field(0.6, ge=0.0, le=1.0, description="Minimum confidence for escalation handlers.")
    auto_apply_threshold: float = Field(0.7, ge=0.0, le=1.0, description="Calibrated confidence required to commit without review.")
    max_validation_failures: int = Field(3, ge=1, description="Validation failures before an issue goes to review.")
    similarity_min_ratio: float = Field(0.5, description="Lowest neighbour similarity considered by codebase similarity.")
    similarity_neighbours: int = Field(200, description="Resolved attempts scanned for nearest neighbours.")
    generative_default_confidence: float = Field(0.65, description="Confidence for generated patches that state none.")
    generative_timeout: float = Field(90.0, description="Seconds before a generative call is abandoned.")

    def floor_for(self, strategy: str) -> float:
        return self.floors.get(strategy, self.default_floor)


class CalibrationConfig(BaseModel):
    min_observations: int = Field(20, description="Observations needed before historical accuracy applies.")
    window: int = Field(200, description="Rolling window of outcomes per (strategy, domain).")


class MonitoringConfig(BaseModel):
    passes: int = Field(1, ge=1, description="Clean detector passes needed to resolve an applied fix.")
    backup_retention_days: int = Field(7, description="Days a backup is kept when its window never closed.")
    backup_dir: str = Field(".codemend/backups", description="Backup directory, relative to the scan root.")


class RetryConfig(BaseModel):
    max_tries: int = Field(3, ge=1, description="Attempts for transient external failures.")
    max_time: Optional[float] = Field(120.0, description="Upper bound in seconds across all retries.")
    base: float = Field(2.0, description="Exponential backoff base.")
    factor: float = Field(1.0, description="Multiplier applied to every backoff wait.")


class SchedulerConfig(BaseModel):
    detector_timeout: float = Field(10.0, description="Hard per-file detector timeout in seconds.")
    cache_ttl_seconds: Optional[int] = Field(24 * 60 * 60, description="Re-scan unchanged files after this age.")
    health_threshold: float = Field(70.0, description="Files below this health score are scheduled early.")
    recent_commits: int = Field(1, description="Commits back from HEAD treated as recent changes.")
    ignore_paths: List[str] = Field(
        default_factory=lambda: [".git/*", ".codemend/*", "node_modules/*", "vendor/*", "build/*", "dist/*", "*.egg-info/*"],
        description="Glob patterns excluded from scanning.",
    )
