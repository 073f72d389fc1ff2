from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, List

import structlog

from codemend.notifications.events import NotificationEvent

logger = structlog.get_logger()


class NotificationSink(ABC):
    @abstractmethod
    def emit(self, event: NotificationEvent) -> None:
        pass


class LoggingSink(NotificationSink):
    def emit(self, event: NotificationEvent) -> None:
        logger.info(
            "notification",
            event_type=event.event_type,
            project=event.project,
            issue_id=event.payload.get("issue_id"),
            rule=event.payload.get("rule_id"),
        )


class CompositeSink(NotificationSink):
    """Fans an event out to several sinks. One failing sink does not starve the others."""

    def __init__(self, sinks: Iterable[NotificationSink]):
        self.sinks: List[NotificationSink] = list(sinks)

    def emit(self, event: NotificationEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.error("notification_sink_failed", sink=type(sink).__name__, event_type=event.event_type, error=str(e))
