from __future__ import annotations

import requests

from escrowcourt.integrations.common import CollaboratorUnavailable
from escrowcourt.integrations.orders.base import OrderLookup


class HttpOrderLookup(OrderLookup):
    name = "http"

    def __init__(self, *, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def exists(self, order_id: str) -> bool:
        try:
            r = requests.get(f"{self.base_url}/orders/{order_id}", timeout=self.timeout)
        except requests.RequestException as e:
            raise CollaboratorUnavailable(f"order service unreachable: {e}") from e
        if r.status_code == 404:
            return False
        if 200 <= r.status_code < 300:
            return True
        raise CollaboratorUnavailable(f"order service answered http_{r.status_code}")
