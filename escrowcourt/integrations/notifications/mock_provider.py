from __future__ import annotations

import os

from escrowcourt.integrations.common import IntegrationResult
from escrowcourt.integrations.notifications.base import NotificationDispatcher


class MockNotificationDispatcher(NotificationDispatcher):
    """Records deliveries in memory. `MOCK_NOTIFY_FORCE_FAIL=1` makes every send fail."""

    name = "mock"

    def __init__(self):
        self.sent: list[tuple[str, dict]] = []

    def _force_failure(self, event: dict) -> bool:
        meta = event.get("metadata") or {}
        return bool(meta.get("force_fail")) or (os.getenv("MOCK_NOTIFY_FORCE_FAIL") or "").strip() == "1"

    def notify(self, *, user_id: str, event: dict) -> IntegrationResult:
        if self._force_failure(event):
            return IntegrationResult(ok=False, code="NOTIFY_PROVIDER_DOWN", message="mock forced failure")
        self.sent.append((str(user_id), dict(event)))
        return IntegrationResult(ok=True, code="OK", message="mock_sent", raw={"to": user_id})
