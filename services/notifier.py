from datetime import datetime, timezone

import httpx
import structlog

from models.monitor import Monitor

logger = structlog.get_logger(__name__)


class WebhookNotifier:
    """Posts a JSON message to a webhook when a monitor goes down."""

    def __init__(self, webhook_url: str, timeout: float = 10):
        self.webhook_url = webhook_url
        self.timeout = timeout

    async def __call__(self, monitor: Monitor, reason: str) -> None:
        message = build_alert_message(monitor, reason)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.webhook_url,
                json={
                    "monitor_id": monitor.id,
                    "status": "down",
                    "message": message,
                    "url": str(monitor.url),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )
            response.raise_for_status()
        logger.info("Sent monitor down notification", monitor_id=monitor.id)


def build_alert_message(monitor: Monitor, reason: str) -> str:
    site_name = monitor.name or str(monitor.url)
    return f"{site_name} is DOWN: {reason}"
