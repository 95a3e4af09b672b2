from __future__ import annotations

from loguru import logger
import requests

from .settings import settings


class AlertRouter:
    """Posts quota, rejection and trade-close notices to an operator webhook."""

    def __init__(self, webhook_url: str | None = None) -> None:
        self.webhook_url = (webhook_url if webhook_url is not None else settings.alert_webhook_url).strip()
        self.timeout = settings.alert_webhook_timeout_seconds
        self.allowed_event_types = {
            item.strip()
            for item in settings.alert_event_types_csv.split(",")
            if item.strip()
        }

    def should_send(self, event_type: str) -> bool:
        if not self.webhook_url:
            return False
        return event_type in self.allowed_event_types

    def send(self, event_type: str, message: str, metadata: dict) -> bool:
        if not self.should_send(event_type):
            return False

        payload = {
            "event_type": event_type,
            "message": message,
            "metadata": metadata,
        }
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Alert webhook failed for {}: {}", event_type, exc)
            return False
        return True
