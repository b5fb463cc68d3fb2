"""
Notification Manager for video session events.

Posts ``created`` and ``admitted`` events to configured webhooks.
Delivery is fire-and-forget: the session flow never waits for it and
failures are logged, never raised to the caller.
"""

import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Set

import aiohttp
import structlog
import yaml

from videoconsult.notifications.models import NotificationConfig

logger = structlog.get_logger("notifications")

DEFAULT_CONFIG_PATH = "config/notifications.yaml"

# Default YAML content written when config file does not exist
_DEFAULT_CONFIG_YAML = """\
# Notifications configuration
webhooks:
  enabled: false
  on_created: ""
  on_admitted: ""
  secret: ""
  timeout_seconds: 10
"""

# Only these session fields leave the service (no tokens)
_WEBHOOK_FIELDS = {
    "session_id", "appointment_id", "patient_id", "doctor_id", "created_at", "version",
}

EVENT_URL_FIELDS = {
    "created": "on_created",
    "admitted": "on_admitted",
}


class NotificationManager:
    """Delivers session lifecycle events to webhooks.

    Usage::

        notifier = NotificationManager()
        notifier.notify("created", session)
        await notifier.drain()   # on shutdown
    """

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH) -> None:
        self.config_path = Path(config_path)
        self.config = self._load_config()
        self._background_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Config loading
    # ------------------------------------------------------------------

    def _load_config(self) -> NotificationConfig:
        """Load notification config from YAML, creating a default file if absent."""
        if not self.config_path.exists():
            logger.info(
                "notifications_config_not_found",
                path=str(self.config_path),
                action="creating_default",
            )
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(_DEFAULT_CONFIG_YAML, encoding="utf-8")
            return NotificationConfig()

        try:
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
            return NotificationConfig(**raw)
        except (yaml.YAMLError, ValueError) as exc:
            logger.error("notifications_config_load_error", error=str(exc))
            return NotificationConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def notify(self, event_type: str, session: Any, **extra: Any) -> Optional[asyncio.Task]:
        """Schedule delivery of ``event_type`` without waiting for it."""
        if not self.config.webhooks.enabled:
            logger.debug("webhook_skipped", reason="webhooks_disabled", event_type=event_type)
            return None

        task = asyncio.create_task(self.trigger_webhook(event_type, session, **extra))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown, tests)."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def trigger_webhook(self, event_type: str, session: Any, **extra: Any) -> None:
        """POST the event to its configured URL.

        Includes ``X-Webhook-Signature`` header (HMAC-SHA256 of body).
        """
        wh_cfg = self.config.webhooks
        if not wh_cfg.enabled:
            logger.debug("webhook_skipped", reason="webhooks_disabled")
            return

        url = getattr(wh_cfg, EVENT_URL_FIELDS.get(event_type, ""), "")
        if not url:
            logger.debug("webhook_skipped", reason="no_url", event_type=event_type)
            return

        try:
            payload = self._build_webhook_payload(event_type, session, extra)
            body_bytes = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")

            headers: Dict[str, str] = {"Content-Type": "application/json"}
            if wh_cfg.secret:
                headers["X-Webhook-Signature"] = self.sign(body_bytes)

            timeout = aiohttp.ClientTimeout(total=wh_cfg.timeout_seconds)

            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.post(url, data=body_bytes, headers=headers) as resp:
                    logger.info(
                        "webhook_triggered",
                        event_type=event_type,
                        url=url,
                        status=resp.status,
                        appointment_id=getattr(session, "appointment_id", None),
                    )
        except Exception as exc:
            logger.error(
                "webhook_failed",
                event_type=event_type,
                url=url,
                error=str(exc),
                appointment_id=getattr(session, "appointment_id", None),
            )

    def sign(self, body: bytes) -> str:
        return hmac.new(
            self.config.webhooks.secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()

    # ------------------------------------------------------------------
    # Webhook helpers
    # ------------------------------------------------------------------

    def _build_webhook_payload(self, event_type: str, session: Any, extra: Dict[str, Any]) -> Dict[str, Any]:
        """Build the JSON payload for a webhook event."""
        if hasattr(session, "model_dump"):
            full = session.model_dump(mode="json")
            session_dict = {k: v for k, v in full.items() if k in _WEBHOOK_FIELDS}
        else:
            session_dict = {k: getattr(session, k, None) for k in sorted(_WEBHOOK_FIELDS)}

        payload = {
            "event": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session": session_dict,
        }
        payload.update(extra)
        return payload
