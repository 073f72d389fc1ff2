from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import structlog

from codemend.models import DetectedIssue

logger = structlog.get_logger()


class BaseDetector(ABC):
    """A per-language detector plugin. Must be side-effect free and safe to run from worker threads."""

    language: str = "unknown"
    extensions: Iterable[str] = ()

    @abstractmethod
    def detect(self, path: str, content: str) -> List[DetectedIssue]:
        """Returns every finding in ``content``. ``path`` is relative to the scan root."""
        pass


class DetectorRegistry:
    def __init__(self, detectors: Optional[Iterable[BaseDetector]] = None):
        self._by_extension: Dict[str, BaseDetector] = {}
        for detector in detectors or []:
            self.register(detector)

    def register(self, detector: BaseDetector) -> None:
        for ext in detector.extensions:
            self._by_extension[ext.lower()] = detector
        logger.debug("detector_registered", language=detector.language)

    def for_path(self, path: str) -> Optional[BaseDetector]:
        return self._by_extension.get(Path(path).suffix.lower())

    @property
    def extensions(self) -> Set[str]:
        return set(self._by_extension)

    def detect(self, path: str, content: str) -> List[DetectedIssue]:
        detector = self.for_path(path)
        if detector is None:
            return []
        return detector.detect(path, content)
