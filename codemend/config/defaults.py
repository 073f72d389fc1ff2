from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from codemend.config.integrations import IntegrationsConfig
from codemend.config.llm import LLMConfig
from codemend.config.remediation import (
    CalibrationConfig,
    MonitoringConfig,
    RetryConfig,
    ScanOptions,
    SchedulerConfig,
    StrategyConfig,
)
from codemend.config.validation import ValidationConfig


class StorageConfig(BaseModel):
    db_url: Optional[str] = Field(None, description="SQLAlchemy URL. Defaults to <root>/.codemend/codemend.db.")


class CodemendConfig(BaseModel):
    scan: ScanOptions = Field(default_factory=ScanOptions)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    strategies: StrategyConfig = Field(default_factory=StrategyConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    integrations: IntegrationsConfig = Field(default_factory=IntegrationsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @classmethod
    def default(cls) -> "CodemendConfig":
        return cls()


DEFAULT_CONFIG = CodemendConfig.default().model_dump(mode="json")
