from __future__ import annotations

from escrowcourt.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from escrowcourt.integrations.notifications.base import NotificationDispatcher
from escrowcourt.integrations.notifications.mock_provider import MockNotificationDispatcher
from escrowcourt.integrations.notifications.webhook_provider import WebhookNotificationDispatcher

_MOCK_SINGLETON: MockNotificationDispatcher | None = None


def mock_dispatcher() -> MockNotificationDispatcher:
    global _MOCK_SINGLETON
    if _MOCK_SINGLETON is None:
        _MOCK_SINGLETON = MockNotificationDispatcher()
    return _MOCK_SINGLETON


def build_notification_dispatcher(config) -> NotificationDispatcher:
    provider = (config.get("NOTIFY_PROVIDER") or "disabled").strip().lower()
    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:notify")
    if provider == "mock":
        return mock_dispatcher()
    if provider == "webhook":
        url = (config.get("NOTIFY_WEBHOOK_URL") or "").strip()
        if not url:
            raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing NOTIFY_WEBHOOK_URL")
        return WebhookNotificationDispatcher(url=url)
    raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:unknown provider {provider}")


def notification_health(config) -> dict:
    provider = (config.get("NOTIFY_PROVIDER") or "disabled").strip().lower()
    missing = []
    if provider == "webhook" and not (config.get("NOTIFY_WEBHOOK_URL") or "").strip():
        missing.append("NOTIFY_WEBHOOK_URL")
    if provider == "disabled":
        status = "disabled"
    elif missing or provider not in ("mock", "webhook"):
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}
