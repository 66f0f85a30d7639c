from __future__ import annotations

import requests

from escrowcourt.integrations.common import IntegrationResult
from escrowcourt.integrations.notifications.base import NotificationDispatcher


def _map_webhook_error(status: int) -> str:
    if status in (401, 403):
        return "NOTIFY_AUTH_FAILED"
    if status == 429:
        return "NOTIFY_RATE_LIMITED"
    if status >= 500 or status == 404:
        return "NOTIFY_PROVIDER_DOWN"
    return "NOTIFY_REJECTED"


class WebhookNotificationDispatcher(NotificationDispatcher):
    name = "webhook"

    def __init__(self, *, url: str, timeout: float = 8.0):
        self.url = url
        self.timeout = timeout

    def notify(self, *, user_id: str, event: dict) -> IntegrationResult:
        payload = {"user_id": str(user_id), "event": event}
        try:
            r = requests.post(self.url, json=payload, timeout=self.timeout)
        except requests.Timeout:
            return IntegrationResult(ok=False, code="NOTIFY_PROVIDER_DOWN", message="timeout")
        except requests.RequestException as e:
            return IntegrationResult(ok=False, code="NOTIFY_PROVIDER_DOWN", message=str(e)[:200])
        if 200 <= r.status_code < 300:
            return IntegrationResult(ok=True, code="OK", message="sent")
        return IntegrationResult(
            ok=False,
            code=_map_webhook_error(r.status_code),
            message=(r.text or f"http_{r.status_code}")[:200],
        )
