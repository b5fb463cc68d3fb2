"""
Pydantic models for notification configuration.

Defines the schema for webhook settings loaded from
config/notifications.yaml.
"""

from pydantic import BaseModel, Field


class WebhookConfig(BaseModel):
    """Webhook configuration."""

    enabled: bool = Field(default=False, description="Whether webhooks are enabled")
    on_created: str = Field(default="", description="URL to POST when a video session is created")
    on_admitted: str = Field(default="", description="URL to POST when a patient is admitted")
    secret: str = Field(default="", description="HMAC-SHA256 secret for webhook signature")
    timeout_seconds: int = Field(default=10, ge=1, description="HTTP request timeout in seconds")


class NotificationConfig(BaseModel):
    """Top-level notification configuration."""

    webhooks: WebhookConfig = Field(default_factory=WebhookConfig)
