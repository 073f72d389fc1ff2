from typing import Dict, Optional

from pydantic import BaseModel, Field


class WebhookConfig(BaseModel):
    url: str = Field(..., description="The URL of the webhook.")
    timeout_seconds: int = Field(10, description="The timeout in seconds for the webhook request.")
    headers: Dict[str, str] = Field(default_factory=dict, description="The headers to send with the webhook request.")
    enabled: bool = Field(False, description="Whether the webhook is enabled.")


class IntegrationsConfig(BaseModel):
    webhook: Optional[WebhookConfig] = Field(None, description="Webhook notification sink.")
    log_events: bool = Field(True, description="Also emit notification events to the structured log.")
