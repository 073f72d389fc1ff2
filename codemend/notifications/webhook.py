import httpx
import structlog

from codemend.config.integrations import WebhookConfig
from codemend.notifications.events import NotificationEvent
from codemend.notifications.sinks import NotificationSink

logger = structlog.get_logger(__name__)


class WebhookSink(NotificationSink):
    def __init__(self, config: WebhookConfig) -> None:
        self._config = config

    def emit(self, event: NotificationEvent) -> None:
        if not self._config.enabled:
            return

        try:
            with httpx.Client() as client:
                response = client.post(
                    self._config.url,
                    json={
                        "event_type": event.event_type,
                        "project": event.project,
                        "created_at": event.created_at.isoformat(),
                        "payload": event.payload,
                    },
                    headers=self._config.headers,
                    timeout=self._config.timeout_seconds,
                )
                response.raise_for_status()
                logger.info("webhook_sent_successfully", url=self._config.url, event_type=event.event_type)
        except httpx.RequestError as e:
            logger.error("webhook_request_failed", url=self._config.url, error=str(e))
        except httpx.HTTPStatusError as e:
            logger.error("webhook_rejected", url=self._config.url, status=e.response.status_code)
