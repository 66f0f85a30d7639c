from __future__ import annotations

from escrowcourt.integrations.common import IntegrationResult


class NotificationDispatcher:
    name = "unknown"

    def notify(self, *, user_id: str, event: dict) -> IntegrationResult:
        raise NotImplementedError
